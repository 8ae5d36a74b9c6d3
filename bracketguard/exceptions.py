"""
Custom exception hierarchy for bracketguard.

Hierarchy:

    BracketGuardError (base)
    ├── OperationalError: transient/retryable (exchange, network, timeouts)
    │   ├── NetworkError: timeout, connection failure, 5xx
    │   └── APIError: exchange returned an error payload
    │       ├── AuthenticationError
    │       ├── RateLimitError
    │       └── OrderNotFoundError
    ├── DataError: bad input or malformed exchange data
    │   ├── ValidationError
    │   └── InstrumentNotFoundError
    └── InvariantError: safety violation

Rules:
    - OperationalError: reconciler logs it, aborts the pass, retries next tick
    - OrderNotFoundError: a cancel target that is already gone; callers
      treat it as success
    - DataError: surfaced to the caller of the failing operation
    - InvariantError: raised before any order is submitted that would
      break a safety invariant; never retried
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""
from typing import Any, Optional


class BracketGuardError(Exception):
    """Base exception for all bracketguard errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(BracketGuardError):
    """Transient/retryable error: exchange API, network, timeouts."""
    pass


class NetworkError(OperationalError):
    """Timeout or connection failure talking to the exchange."""
    pass


class APIError(OperationalError):
    """The exchange answered with an error payload."""

    def __init__(self, message: str, code: Optional[Any] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class AuthenticationError(APIError):
    """Credential or signature rejected.

    Fatal to the current reconciliation pass; retried on the next tick
    since clock drift on the signature timestamp can heal by itself.
    """
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


class OrderNotFoundError(APIError):
    """Cancel target no longer exists (already filled or cancelled)."""
    pass


# ============ DATA (bad input) ============

class DataError(BracketGuardError):
    """Bad data: invalid request parameters, malformed exchange payload."""
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class InstrumentNotFoundError(DataError):
    """No precision metadata is known for the requested symbol."""
    pass


# ============ INVARIANT (safety violation) ============

class InvariantError(BracketGuardError):
    """Safety invariant violation. Should never be caught and silently continued."""
    pass
