"""
Broker Gateway - Utilities.

============================================================
PURPOSE
============================================================
Helpers shared by connectors and the signal processor:

- Quantity/price parsing and formatting
- Symbol normalization per exchange
- Order request validation
- Retry with exponential backoff
- Request pacing for per-broker rate limits

============================================================
"""

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Awaitable, Callable, Optional, TypeVar, Union

from .errors import (
    InvalidOrderSideError,
    InvalidOrderTypeError,
    InvalidPriceError,
    InvalidQuantityError,
    InvalidSymbolError,
    is_retryable,
)
from .types import OrderRequest, OrderSide, OrderType, PositionSide


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_LEVERAGE = 125
MAX_BACKOFF_SECONDS = 60.0


# ============================================================
# SYMBOLS
# ============================================================

def format_symbol(symbol: str, exchange: str) -> str:
    """
    Format a symbol according to exchange requirements.

    binance and bitget use BTCUSDT, okx uses BTC-USDT.
    """
    symbol = symbol.upper()
    exchange = exchange.lower()

    if exchange == "okx":
        if "-" not in symbol and symbol.endswith("USDT"):
            return f"{symbol[:-4]}-USDT"
        return symbol

    return symbol


def normalize_symbol(symbol: str) -> str:
    """Normalize symbol format: BTC-USDT, btc_usdt, BTC/USDT -> BTCUSDT."""
    symbol = symbol.upper()
    for sep in ("-", "_", "/"):
        symbol = symbol.replace(sep, "")
    return symbol


# ============================================================
# PARSING AND FORMATTING
# ============================================================

def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Convert a size or price to Decimal.

    Raises:
        InvalidOperation: If value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    result = Decimal(str(value).strip())
    if not result.is_finite():
        raise InvalidOperation(f"non-finite value: {value}")
    return result


def parse_quantity(quantity: str) -> Decimal:
    """
    Parse a strictly positive quantity.

    Raises:
        InvalidQuantityError: If empty, malformed or not positive
    """
    if not quantity:
        raise InvalidQuantityError()

    try:
        qty = to_decimal(quantity)
    except (InvalidOperation, ValueError) as e:
        raise InvalidQuantityError(f"invalid quantity: {quantity}") from e

    if qty <= 0:
        raise InvalidQuantityError("invalid quantity: quantity must be positive")

    return qty


def parse_price(price: str) -> Decimal:
    """
    Parse a strictly positive price.

    Raises:
        InvalidPriceError: If empty, malformed or not positive
    """
    if not price:
        raise InvalidPriceError()

    try:
        p = to_decimal(price)
    except (InvalidOperation, ValueError) as e:
        raise InvalidPriceError(f"invalid price: {price}") from e

    if p <= 0:
        raise InvalidPriceError("invalid price: price must be positive")

    return p


def _format_fixed(value: Decimal, precision: int) -> str:
    quantum = Decimal(1).scaleb(-precision)
    return f"{to_decimal(value).quantize(quantum, rounding=ROUND_DOWN):f}"


def format_quantity(quantity: Union[Decimal, float, str], precision: int) -> str:
    """Format a quantity with a fixed number of decimals (truncating)."""
    return _format_fixed(quantity, precision)


def format_price(price: Union[Decimal, float, str], precision: int) -> str:
    """Format a price with a fixed number of decimals (truncating)."""
    return _format_fixed(price, precision)


# ============================================================
# VALIDATION
# ============================================================

def validate_order_request(request: Optional[OrderRequest]) -> None:
    """
    Validate an order request before it reaches the exchange.

    Raises:
        ValueError: If request is None
        InvalidSymbolError, InvalidOrderSideError,
        InvalidOrderTypeError, InvalidQuantityError,
        InvalidPriceError: On the first failing field
    """
    if request is None:
        raise ValueError("order request is nil")

    if not request.symbol:
        raise InvalidSymbolError()

    if not isinstance(request.side, OrderSide):
        raise InvalidOrderSideError()

    if not isinstance(request.order_type, OrderType):
        raise InvalidOrderTypeError()

    parse_quantity(request.quantity)

    if request.order_type == OrderType.LIMIT:
        if not request.price:
            raise InvalidPriceError("invalid price: price required for limit orders")
        parse_price(request.price)


def is_valid_leverage(leverage: int) -> bool:
    """Check if leverage is within 1..125."""
    return 1 <= leverage <= MAX_LEVERAGE


# ============================================================
# SIDES
# ============================================================

def convert_order_side_to_position_side(side: OrderSide, position_mode: str) -> PositionSide:
    """Position side an order opens under the given position mode."""
    if position_mode == "hedge":
        return PositionSide.LONG if side == OrderSide.BUY else PositionSide.SHORT
    return PositionSide.BOTH


def get_opposite_order_side(side: OrderSide) -> OrderSide:
    return OrderSide.SELL if side == OrderSide.BUY else OrderSide.BUY


def get_opposite_position_side(side: PositionSide) -> PositionSide:
    if side == PositionSide.LONG:
        return PositionSide.SHORT
    if side == PositionSide.SHORT:
        return PositionSide.LONG
    return PositionSide.BOTH


# ============================================================
# RETRY
# ============================================================

def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float = MAX_BACKOFF_SECONDS,
) -> float:
    """
    Delay before the given retry attempt.

    Args:
        attempt: Retry number, starting at 1
        base_delay: Delay before the first retry in seconds
        max_delay: Cap in seconds

    Returns:
        base_delay * 2 ** (attempt - 1), capped at max_delay
    """
    if attempt <= 0:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float,
    max_delay: float = MAX_BACKOFF_SECONDS,
) -> T:
    """
    Run an operation with exponential backoff.

    Only retryable errors (see errors.is_retryable) trigger a
    retry. Cancelling the calling task while it sleeps raises
    asyncio.CancelledError straight away and stops retrying.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry in seconds
        max_delay: Cap on a single delay in seconds

    Returns:
        Result of the first successful attempt

    Raises:
        The last error raised by operation
    """
    attempt = 0
    while True:
        if attempt > 0:
            delay = backoff_delay(attempt, base_delay, max_delay)
            await asyncio.sleep(delay)

        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_retries:
                raise

            attempt += 1
            logger.warning(
                f"Retryable error (attempt {attempt}/{max_retries + 1}): {e}. "
                f"Retrying in {backoff_delay(attempt, base_delay, max_delay):.1f}s..."
            )


# ============================================================
# RATE LIMIT PACING
# ============================================================

class RequestPacer:
    """
    Keeps a minimum interval between consecutive requests.

    Each caller reserves the next free slot before sleeping, so
    concurrent callers are spaced out too. An interval of 0
    disables pacing.
    """

    def __init__(self, min_interval: float = 0.0):
        self.min_interval = min_interval
        self._next_slot = 0.0

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return

        now = time.monotonic()
        slot = max(now, self._next_slot)
        self._next_slot = slot + self.min_interval
        if slot > now:
            await asyncio.sleep(slot - now)
