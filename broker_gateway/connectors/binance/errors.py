"""
Binance Connector - Error Mapping.

============================================================
PURPOSE
============================================================
Map raw Binance failures onto the gateway error taxonomy.

Each mapping yields a machine code (used by BrokerError and
is_retryable) and a sentinel error (used by is_error).

============================================================
"""

import asyncio
from typing import Dict, Optional, Tuple, Type

import aiohttp

from ...errors import (
    APIError,
    BrokerGatewayError,
    InsufficientBalanceError,
    InvalidCredentialsError,
    InvalidLeverageError,
    InvalidMarginTypeError,
    InvalidOrderSideError,
    InvalidOrderTypeError,
    InvalidPriceError,
    InvalidQuantityError,
    InvalidSymbolError,
    MarketClosedError,
    NetworkError,
    OrderNotFoundError,
    RateLimitExceededError,
    RequestTimeoutError,
)
from .client import BinanceAPIError


# ============================================================
# BINANCE ERROR MAPPING
# ============================================================

BINANCE_ERROR_MAP: Dict[int, Tuple[str, Type[BrokerGatewayError]]] = {
    # Rate limiting
    -1003: ("RATE_LIMIT", RateLimitExceededError),
    -1015: ("RATE_LIMIT", RateLimitExceededError),

    # Authentication
    -1002: ("INVALID_CREDENTIALS", InvalidCredentialsError),
    -1022: ("INVALID_CREDENTIALS", InvalidCredentialsError),
    -2014: ("INVALID_CREDENTIALS", InvalidCredentialsError),
    -2015: ("INVALID_CREDENTIALS", InvalidCredentialsError),

    # Exchange internal
    -1000: ("SERVER_ERROR", APIError),
    -1001: ("SERVER_ERROR", APIError),
    -1006: ("SERVER_ERROR", APIError),
    -1007: ("TIMEOUT", RequestTimeoutError),
    -1021: ("TIMEOUT", RequestTimeoutError),

    # Order validation
    -1013: ("INVALID_QUANTITY", InvalidQuantityError),
    -1111: ("INVALID_QUANTITY", InvalidQuantityError),
    -4003: ("INVALID_QUANTITY", InvalidQuantityError),
    -1116: ("INVALID_ORDER_TYPE", InvalidOrderTypeError),
    -1117: ("INVALID_ORDER_SIDE", InvalidOrderSideError),
    -1121: ("INVALID_SYMBOL", InvalidSymbolError),
    -4014: ("INVALID_PRICE", InvalidPriceError),
    -4015: ("INVALID_PRICE", InvalidPriceError),

    # Balance
    -2010: ("INSUFFICIENT_BALANCE", InsufficientBalanceError),
    -2018: ("INSUFFICIENT_BALANCE", InsufficientBalanceError),
    -2019: ("INSUFFICIENT_BALANCE", InsufficientBalanceError),

    # Orders
    -2011: ("ORDER_NOT_FOUND", OrderNotFoundError),
    -2013: ("ORDER_NOT_FOUND", OrderNotFoundError),

    # Futures settings
    -4028: ("INVALID_LEVERAGE", InvalidLeverageError),
    -4161: ("INVALID_LEVERAGE", InvalidLeverageError),
    -4044: ("INVALID_MARGIN_TYPE", InvalidMarginTypeError),

    # Trading halted for the symbol
    -4131: ("MARKET_CLOSED", MarketClosedError),
}

# Settings calls that are already in the requested state.
NO_CHANGE_CODES = {
    -4046,  # No need to change margin type
    -4059,  # No need to change position side
}


def map_binance_error(
    code: int,
    message: str,
    http_status: Optional[int] = None,
) -> Tuple[Optional[str], BrokerGatewayError]:
    """
    Map a Binance API error to a gateway code and sentinel.

    Args:
        code: Binance error code
        message: Binance error message
        http_status: HTTP status of the response

    Returns:
        (code, sentinel). code is None when the failure has no
        specific classification and the caller's default applies.
    """
    if code in BINANCE_ERROR_MAP:
        gateway_code, sentinel = BINANCE_ERROR_MAP[code]
        return gateway_code, sentinel(f"{sentinel().args[0]}: {message}")

    if http_status in (429, 418):
        return "RATE_LIMIT", RateLimitExceededError(f"rate limit exceeded: {message}")

    if http_status in (401, 403):
        return "INVALID_CREDENTIALS", InvalidCredentialsError(f"invalid credentials: {message}")

    if http_status is not None and http_status >= 500:
        return "SERVER_ERROR", APIError(f"API error: {message}")

    return None, APIError(f"API error: {message}")


def classify_exception(err: BaseException) -> Tuple[Optional[str], BrokerGatewayError]:
    """
    Classify any failure raised by the REST client.

    Transport timeouts and connection errors are retryable;
    API errors go through map_binance_error.
    """
    if isinstance(err, BinanceAPIError):
        code, sentinel = map_binance_error(err.code, err.message, err.http_status)
    elif isinstance(err, asyncio.TimeoutError):
        code, sentinel = "TIMEOUT", RequestTimeoutError(f"request timeout: {err}")
    elif isinstance(err, aiohttp.ClientError):
        code, sentinel = "NETWORK_ERROR", NetworkError(f"network error: {err}")
    else:
        code, sentinel = None, APIError(f"API error: {err}")

    sentinel.__cause__ = err
    return code, sentinel
