"""
Broker Gateway - Order Calculation.

============================================================
PURPOSE
============================================================
Translate a target position size into a concrete order.

Sizes are signed: positive long, negative short, zero flat.

    delta = target - previous
    delta > 0  -> BUY  delta
    delta < 0  -> SELL -delta
    delta == 0 -> NoPositionChangeError (deliberate no-op)

REDUCE-ONLY:
    previous > 0 and target < previous, or
    previous < 0 and target > previous.

    This also holds when the move crosses zero (+5 -> -3),
    so a side-flipping order is flagged reduce-only. Exchanges
    may reject or truncate such an order. The behavior is kept
    as-is until the product decision on splitting flips into
    close + open orders is made.

============================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from .errors import InvalidQuantityError, NoPositionChangeError
from .types import OrderRequest, OrderSide, OrderType, PositionSide, TradingSignal
from .utils import format_quantity, format_symbol, to_decimal


DEFAULT_TIME_IN_FORCE = "GTC"


def calculate_order_quantity(previous: Decimal, target: Decimal) -> Tuple[Decimal, OrderSide]:
    """
    Compute the order needed to move from previous to target size.

    Args:
        previous: Signed size before the signal
        target: Signed size the signal asks for

    Returns:
        (quantity, side) with quantity strictly positive

    Raises:
        NoPositionChangeError: If target equals previous
    """
    delta = target - previous

    if delta == 0:
        raise NoPositionChangeError()

    if delta > 0:
        return delta, OrderSide.BUY
    return -delta, OrderSide.SELL


def derive_position_side(target: Decimal) -> PositionSide:
    """Hedge-mode position side for a target size."""
    if target > 0:
        return PositionSide.LONG
    if target < 0:
        return PositionSide.SHORT
    return PositionSide.BOTH


def is_reduce_only(previous: Decimal, target: Decimal) -> bool:
    """True whenever the previous side's magnitude decreases."""
    return (previous > 0 and target < previous) or (previous < 0 and target > previous)


def _parse_size(value: str, field_name: str) -> Decimal:
    try:
        return to_decimal(value)
    except (InvalidOperation, ValueError) as e:
        raise InvalidQuantityError(f"invalid {field_name}: {value!r}") from e


def build_order_request(
    signal: TradingSignal,
    quantity_precision: int = 8,
) -> Optional[OrderRequest]:
    """
    Build the order request a signal calls for.

    Args:
        signal: Validated trading signal
        quantity_precision: Decimals in the formatted quantity

    Returns:
        OrderRequest, or None when no position change is needed

    Raises:
        InvalidQuantityError: If a size field is not numeric
    """
    previous = _parse_size(signal.prev_market_position_size, "prev_market_position_size")
    target = _parse_size(signal.market_position_size, "market_position_size")

    try:
        quantity, side = calculate_order_quantity(previous, target)
    except NoPositionChangeError:
        return None

    if signal.order_type.lower() == "limit" and signal.price:
        order_type = OrderType.LIMIT
        price = signal.price
    else:
        order_type = OrderType.MARKET
        price = ""

    return OrderRequest(
        symbol=format_symbol(signal.symbol, signal.exchange),
        side=side,
        order_type=order_type,
        quantity=format_quantity(quantity, quantity_precision),
        price=price,
        position_side=derive_position_side(target),
        time_in_force=DEFAULT_TIME_IN_FORCE,
        reduce_only=is_reduce_only(previous, target),
    )
