"""
Broker Gateway - Error Taxonomy.

============================================================
PURPOSE
============================================================
Error classification for broker operations.

ERROR CATEGORIES:
1. Validation Errors - Bad signal or order shape, never retried
2. Connection State - Not connected, invalid credentials
3. Transient Errors - Rate limit, network, timeout, server
4. Exchange Rejections - Balance, leverage, not found, closed

RETRYABLE vs NON-RETRYABLE:
- Retryable: RateLimitExceededError, NetworkError,
  RequestTimeoutError, or a BrokerError whose code is in
  RETRYABLE_ERROR_CODES. Checked through the cause chain.
- Non-retryable: everything else.

============================================================
"""

from typing import Dict, Iterator, Optional, Type


# ============================================================
# BASE
# ============================================================

class BrokerGatewayError(Exception):
    """Base exception for broker gateway errors."""
    pass


# ============================================================
# SENTINEL CONDITIONS
# ============================================================

class BrokerNotFoundError(BrokerGatewayError):
    """No broker registered or managed under the given name."""

    def __init__(self, message: str = "broker not found"):
        super().__init__(message)


class InvalidCredentialsError(BrokerGatewayError):
    def __init__(self, message: str = "invalid credentials"):
        super().__init__(message)


class NotConnectedError(BrokerGatewayError):
    def __init__(self, message: str = "broker not connected"):
        super().__init__(message)


class InvalidSymbolError(BrokerGatewayError):
    def __init__(self, message: str = "invalid symbol"):
        super().__init__(message)


class InvalidOrderTypeError(BrokerGatewayError):
    def __init__(self, message: str = "invalid order type"):
        super().__init__(message)


class InvalidOrderSideError(BrokerGatewayError):
    def __init__(self, message: str = "invalid order side"):
        super().__init__(message)


class InvalidQuantityError(BrokerGatewayError):
    def __init__(self, message: str = "invalid quantity"):
        super().__init__(message)


class InvalidPriceError(BrokerGatewayError):
    def __init__(self, message: str = "invalid price"):
        super().__init__(message)


class InsufficientBalanceError(BrokerGatewayError):
    def __init__(self, message: str = "insufficient balance"):
        super().__init__(message)


class OrderNotFoundError(BrokerGatewayError):
    def __init__(self, message: str = "order not found"):
        super().__init__(message)


class PositionNotFoundError(BrokerGatewayError):
    def __init__(self, message: str = "position not found"):
        super().__init__(message)


class MarketClosedError(BrokerGatewayError):
    def __init__(self, message: str = "market is closed"):
        super().__init__(message)


class RateLimitExceededError(BrokerGatewayError):
    def __init__(self, message: str = "rate limit exceeded"):
        super().__init__(message)


class APIError(BrokerGatewayError):
    def __init__(self, message: str = "API error"):
        super().__init__(message)


class NetworkError(BrokerGatewayError):
    def __init__(self, message: str = "network error"):
        super().__init__(message)


class RequestTimeoutError(BrokerGatewayError):
    def __init__(self, message: str = "request timeout"):
        super().__init__(message)


class InvalidLeverageError(BrokerGatewayError):
    def __init__(self, message: str = "invalid leverage"):
        super().__init__(message)


class InvalidMarginTypeError(BrokerGatewayError):
    def __init__(self, message: str = "invalid margin type"):
        super().__init__(message)


# ============================================================
# CORE ERRORS
# ============================================================

class NoPositionChangeError(BrokerGatewayError):
    """Target size equals previous size. Callers treat this as a no-op."""

    def __init__(self, message: str = "no position change required"):
        super().__init__(message)


class SignalValidationError(BrokerGatewayError):
    """Inbound signal is missing a required field."""
    pass


class UnsupportedOperationError(BrokerGatewayError):
    """Connector does not implement the futures extension."""
    pass


class ConfigurationError(BrokerGatewayError):
    """Broker configuration failed validation."""
    pass


class AggregateBrokerError(BrokerGatewayError):
    """
    Several brokers failed during one operation.

    Attributes:
        errors: broker name -> exception
    """

    def __init__(self, message: str, errors: Dict[str, BaseException]):
        self.errors = dict(errors)
        details = "; ".join(f"{name}: {err}" for name, err in sorted(self.errors.items()))
        super().__init__(f"{message}: {details}" if details else message)


# ============================================================
# BROKER-SCOPED ERROR
# ============================================================

class BrokerError(BrokerGatewayError):
    """
    Structured error raised by a connector.

    Carries the exchange name, a short machine code and a human
    message. The underlying cause is kept as __cause__ so
    is_error() can see sentinels through the wrapper.
    """

    def __init__(
        self,
        broker: str,
        code: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.broker = broker
        self.code = code
        self.message = message
        super().__init__(self._format(cause))
        self.__cause__ = cause

    @property
    def cause(self) -> Optional[BaseException]:
        """Wrapped cause."""
        return self.__cause__

    def _format(self, cause: Optional[BaseException]) -> str:
        if cause is not None:
            return f"[{self.broker}] {self.code}: {self.message} ({cause})"
        return f"[{self.broker}] {self.code}: {self.message}"

    def __str__(self) -> str:
        return self._format(self.__cause__)


# ============================================================
# CLASSIFICATION
# ============================================================

TEMPORARY_ERROR_TYPES = (
    RateLimitExceededError,
    NetworkError,
    RequestTimeoutError,
)

RETRYABLE_ERROR_CODES = {
    "RATE_LIMIT",
    "NETWORK_ERROR",
    "TIMEOUT",
    "SERVER_ERROR",
}


def iter_error_chain(err: Optional[BaseException]) -> Iterator[BaseException]:
    """Yield err followed by each explicit cause."""
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def is_error(err: Optional[BaseException], error_type: Type[BaseException]) -> bool:
    """
    Check whether err is, or wraps, an error of the given type.

    Args:
        err: Error to inspect
        error_type: Exception class to look for

    Returns:
        True if any error in the cause chain is an instance
    """
    return any(isinstance(e, error_type) for e in iter_error_chain(err))


def is_temporary_error(err: Optional[BaseException]) -> bool:
    """Check if an error is temporary (network, rate limit, timeout)."""
    if err is None:
        return False

    for e in iter_error_chain(err):
        if isinstance(e, TEMPORARY_ERROR_TYPES):
            return True
        if isinstance(e, BrokerError) and e.code in RETRYABLE_ERROR_CODES:
            return True

    return False


def is_retryable(err: Optional[BaseException]) -> bool:
    """Check if an error should be retried."""
    return is_temporary_error(err)
