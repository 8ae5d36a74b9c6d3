"""
Configuration models for bracketguard.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional, Tuple

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bracketguard.config.dotenv_loader import load_dotenv_files
from bracketguard.constants import (
    BATCH_ORDER_TIMEOUT,
    DEFAULT_API_TIMEOUT,
    DEFAULT_MAINTENANCE_MARGIN_RATE,
    DEFAULT_PRICE_TICK,
    DEFAULT_QUANTITY_STEP,
    DEFAULT_RECV_WINDOW_MS,
    ORDER_GRACE_SECONDS,
    RECONCILE_INTERVAL_SECONDS,
)
from bracketguard.exceptions import ValidationError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# ${VAR} or $VAR
_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)")


def _is_set(value: Optional[str]) -> bool:
    """False for missing values and unexpanded ${VAR} placeholders."""
    return bool(value and value.strip() and not value.strip().startswith("$"))


class ExchangeConfig(BaseSettings):
    """Exchange configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binanceusdm"
    use_testnet: bool = False

    # Credentials (loaded from env or yaml)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    testnet_api_key: Optional[str] = None
    testnet_api_secret: Optional[str] = None

    base_url: Optional[str] = Field(default=None, description="Override the production REST base URL")
    testnet_base_url: Optional[str] = Field(default=None, description="Override the testnet REST base URL")
    recv_window_ms: int = Field(default=DEFAULT_RECV_WINDOW_MS, ge=1000, le=60000)
    request_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, gt=0, le=30, description="Timeout for every REST call")
    batch_timeout_seconds: float = Field(default=BATCH_ORDER_TIMEOUT, gt=0, le=60, description="Timeout for batch placement")

    # None = ask the exchange at startup
    hedge_mode: Optional[bool] = Field(default=None, description="Force hedge (dual-side) mode on or off")

    @property
    def effective_base_url(self) -> Optional[str]:
        return self.testnet_base_url if self.use_testnet else self.base_url


class ReconciliationConfig(BaseSettings):
    """Reconciliation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    reconcile_enabled: bool = Field(default=True, description="Run the periodic orphan-order reconciler")
    interval_seconds: int = Field(default=RECONCILE_INTERVAL_SECONDS, ge=5, le=300, description="Reconcile every N seconds")
    run_on_startup: bool = Field(default=True, description="Run the first pass immediately on start")
    fetch_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, gt=0, le=30)
    cancel_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, gt=0, le=30)
    order_grace_seconds: float = Field(
        default=ORDER_GRACE_SECONDS,
        ge=0,
        le=60,
        description="Leave orders created this long before a pass starts for the next pass",
    )


class ExecutionConfig(BaseSettings):
    """Order placement and precision configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_price_tick: Decimal = Field(default=DEFAULT_PRICE_TICK, gt=0)
    default_quantity_step: Decimal = Field(default=DEFAULT_QUANTITY_STEP, gt=0)
    maintenance_margin_rate: Decimal = Field(default=DEFAULT_MAINTENANCE_MARGIN_RATE, ge=0, lt=1)
    instrument_cache_ttl_seconds: int = Field(default=12 * 3600, ge=60)
    strict_instrument_specs: bool = Field(default=False, description="Refuse symbols with no exchange metadata")


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class HealthConfig(BaseSettings):
    """Health endpoint configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} from the environment."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Leave unresolved placeholders as-is

        config_dict = yaml.safe_load(_ENV_PATTERN.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"].strip().lower()

        return cls(**config_dict)

    def credentials(self) -> Tuple[str, str]:
        """
        API key and secret for the selected network.

        Raises:
            ValidationError: If either is missing
        """
        if self.exchange.use_testnet:
            key, secret = self.exchange.testnet_api_key, self.exchange.testnet_api_secret
            names = "BINANCE_TESTNET_API_KEY / BINANCE_TESTNET_API_SECRET"
        else:
            key, secret = self.exchange.api_key, self.exchange.api_secret
            names = "BINANCE_API_KEY / BINANCE_API_SECRET"
        if not (_is_set(key) and _is_set(secret)):
            raise ValidationError(f"Exchange credentials not configured (set {names})")
        return key.strip(), secret.strip()


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses bracketguard/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If a value is out of range
    """
    load_dotenv_files()
    return Config.from_yaml(config_path or DEFAULT_CONFIG_PATH)
