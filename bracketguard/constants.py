"""
System-wide constants for bracketguard.

Centralizes magic numbers and configuration values used across modules.
"""
from decimal import Decimal

# API Configuration
BINANCE_FUTURES_BASE_URL = "https://fapi.binance.com"
BINANCE_FUTURES_TESTNET_URL = "https://testnet.binancefuture.com"

# API Endpoints
POSITION_RISK_ENDPOINT = "/fapi/v2/positionRisk"
PREMIUM_INDEX_ENDPOINT = "/fapi/v1/premiumIndex"
POSITION_MODE_ENDPOINT = "/fapi/v1/positionSide/dual"
ACCOUNT_ENDPOINT = "/fapi/v2/account"
SERVER_TIME_ENDPOINT = "/fapi/v1/time"

# Binance error codes
ERROR_CODE_UNKNOWN_ORDER_CANCEL = -2011  # CANCEL_REJECTED / unknown order
ERROR_CODE_NO_SUCH_ORDER = -2013
ERROR_CODE_TOO_MANY_REQUESTS = -1003
ERROR_CODE_TIMESTAMP_OUT_OF_WINDOW = -1021
ERROR_CODE_INVALID_SIGNATURE = -1022
ERROR_CODE_BAD_API_KEY = -2014
ERROR_CODE_REJECTED_MBX_KEY = -2015
ORDER_NOT_FOUND_CODES = frozenset({ERROR_CODE_UNKNOWN_ORDER_CANCEL, ERROR_CODE_NO_SUCH_ORDER})
AUTH_ERROR_CODES = frozenset({ERROR_CODE_TIMESTAMP_OUT_OF_WINDOW, ERROR_CODE_INVALID_SIGNATURE, ERROR_CODE_BAD_API_KEY, ERROR_CODE_REJECTED_MBX_KEY})

# Rate Limiting
PUBLIC_API_CAPACITY = 20
PUBLIC_API_REFILL_RATE = 10.0  # requests per second
PRIVATE_API_CAPACITY = 20
PRIVATE_API_REFILL_RATE = 5.0

# Timeouts
DEFAULT_API_TIMEOUT = 5  # seconds
BATCH_ORDER_TIMEOUT = 8  # seconds
DEFAULT_RECV_WINDOW_MS = 10000

# Reconciliation
RECONCILE_INTERVAL_SECONDS = 15
# Orders the exchange stamps this close to a pass start wait one pass; covers
# clock skew between the local clock and exchange order times
ORDER_GRACE_SECONDS = 2.0

# Conditional order types that fully close a position
CONDITIONAL_CLOSE_TYPES = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET", "STOP", "TAKE_PROFIT"})

# Risk
DEFAULT_MAINTENANCE_MARGIN_RATE = Decimal("0.004")
DEFAULT_PRICE_TICK = Decimal("0.01")
DEFAULT_QUANTITY_STEP = Decimal("0.001")

# Reporting precision
MIN_PRICE_DECIMALS = 2
QUANTITY_DECIMALS = 8
CURRENCY_DECIMALS = 4
PERCENT_DECIMALS = 2
LEVERAGE_DECIMALS = 1
