"""
Order Calculation Tests.

============================================================
PURPOSE
============================================================
Tests for translating target position sizes into orders.

TEST CATEGORIES:
- Quantity/side calculation
- Position side derivation
- Reduce-only predicate (including flips through zero)
- Order request building from signals

============================================================
"""

import pytest
from decimal import Decimal

from broker_gateway import (
    InvalidQuantityError,
    NoPositionChangeError,
    OrderSide,
    OrderType,
    PositionSide,
    TradingSignal,
    build_order_request,
    calculate_order_quantity,
    derive_position_side,
    is_reduce_only,
)


def make_signal(**overrides) -> TradingSignal:
    fields = dict(
        symbol="BTCUSDT",
        exchange="binance",
        action="buy",
        market_position_size="0.001",
        prev_market_position_size="0",
        order_type="market",
    )
    fields.update(overrides)
    return TradingSignal(**fields)


# ============================================================
# QUANTITY CALCULATION
# ============================================================

class TestCalculateOrderQuantity:
    """Tests for calculate_order_quantity."""

    @pytest.mark.parametrize("previous,target", [
        ("0", "1"),
        ("1", "3"),
        ("-2", "1"),
        ("-5", "-1"),
        ("0.001", "0.5"),
    ])
    def test_increase_is_buy(self, previous, target):
        """Test that a rising target buys the difference."""
        quantity, side = calculate_order_quantity(Decimal(previous), Decimal(target))

        assert side == OrderSide.BUY
        assert quantity == abs(Decimal(target) - Decimal(previous))

    @pytest.mark.parametrize("previous,target", [
        ("1", "0"),
        ("3", "1"),
        ("1", "-2"),
        ("-1", "-5"),
        ("0", "-0.25"),
    ])
    def test_decrease_is_sell(self, previous, target):
        """Test that a falling target sells the difference."""
        quantity, side = calculate_order_quantity(Decimal(previous), Decimal(target))

        assert side == OrderSide.SELL
        assert quantity == abs(Decimal(target) - Decimal(previous))

    def test_quantity_always_positive(self):
        """Test that sign lives only in the side."""
        quantity, _ = calculate_order_quantity(Decimal("5"), Decimal("-3"))

        assert quantity == Decimal("8")
        assert quantity > 0

    @pytest.mark.parametrize("size", ["0", "0.001", "-2.5"])
    def test_no_change_raises(self, size):
        """Test that equal sizes report no change."""
        with pytest.raises(NoPositionChangeError, match="no position change required"):
            calculate_order_quantity(Decimal(size), Decimal(size))


# ============================================================
# POSITION SIDE AND REDUCE-ONLY
# ============================================================

class TestPositionSide:
    """Tests for derive_position_side."""

    def test_long(self):
        assert derive_position_side(Decimal("0.5")) == PositionSide.LONG

    def test_short(self):
        assert derive_position_side(Decimal("-0.5")) == PositionSide.SHORT

    def test_flat(self):
        assert derive_position_side(Decimal("0")) == PositionSide.BOTH


class TestReduceOnly:
    """Tests for is_reduce_only."""

    @pytest.mark.parametrize("previous,target,expected", [
        ("0", "1", False),      # open long
        ("0", "-1", False),     # open short
        ("1", "2", False),      # add to long
        ("-1", "-2", False),    # add to short
        ("2", "1", True),       # reduce long
        ("-2", "-1", True),     # reduce short
        ("1", "0", True),       # close long
        ("-1", "0", True),      # close short
    ])
    def test_predicate(self, previous, target, expected):
        """Test the reduce-only predicate on ordinary moves."""
        assert is_reduce_only(Decimal(previous), Decimal(target)) is expected

    def test_flip_long_to_short_is_reduce_only(self):
        """Test that +5 -> -3 is flagged reduce-only (current behavior)."""
        assert is_reduce_only(Decimal("5"), Decimal("-3")) is True

    def test_flip_short_to_long_is_reduce_only(self):
        """Test that -5 -> +3 is flagged reduce-only (current behavior)."""
        assert is_reduce_only(Decimal("-5"), Decimal("3")) is True


# ============================================================
# ORDER REQUEST BUILDING
# ============================================================

class TestBuildOrderRequest:
    """Tests for build_order_request."""

    def test_open_long_market(self):
        """Test 0 -> 0.001 market signal."""
        request = build_order_request(make_signal())

        assert request is not None
        assert request.side == OrderSide.BUY
        assert request.order_type == OrderType.MARKET
        assert request.quantity == "0.00100000"
        assert request.price == ""
        assert request.position_side == PositionSide.LONG
        assert request.reduce_only is False
        assert request.time_in_force == "GTC"

    def test_close_long_limit(self):
        """Test 0.001 -> 0 limit signal with a price."""
        request = build_order_request(make_signal(
            action="sell",
            prev_market_position_size="0.001",
            market_position_size="0",
            order_type="limit",
            price="51000",
        ))

        assert request is not None
        assert request.side == OrderSide.SELL
        assert request.order_type == OrderType.LIMIT
        assert request.quantity == "0.00100000"
        assert request.price == "51000"
        assert request.position_side == PositionSide.BOTH
        assert request.reduce_only is True

    def test_no_change_returns_none(self):
        """Test 0.001 -> 0.001 yields no order."""
        request = build_order_request(make_signal(
            prev_market_position_size="0.001",
            market_position_size="0.001",
        ))

        assert request is None

    def test_limit_without_price_falls_back_to_market(self):
        """Test that a limit signal without a price becomes market."""
        request = build_order_request(make_signal(order_type="limit", price=""))

        assert request.order_type == OrderType.MARKET
        assert request.price == ""

    def test_limit_order_type_is_case_insensitive(self):
        """Test that LIMIT is accepted like limit."""
        request = build_order_request(make_signal(order_type="LIMIT", price="50000"))

        assert request.order_type == OrderType.LIMIT

    def test_flip_through_zero(self):
        """Test +5 -> -3 sells 8, short side, reduce-only."""
        request = build_order_request(make_signal(
            prev_market_position_size="5",
            market_position_size="-3",
        ))

        assert request.side == OrderSide.SELL
        assert request.quantity == "8.00000000"
        assert request.position_side == PositionSide.SHORT
        assert request.reduce_only is True

    def test_empty_previous_size_is_invalid(self):
        """Test that an empty previous size is rejected."""
        with pytest.raises(InvalidQuantityError):
            build_order_request(make_signal(prev_market_position_size=""))

    def test_non_numeric_target_is_invalid(self):
        """Test that a malformed target size is rejected."""
        with pytest.raises(InvalidQuantityError):
            build_order_request(make_signal(market_position_size="abc"))

    def test_okx_symbol_formatting(self):
        """Test that okx signals use dashed symbols."""
        request = build_order_request(make_signal(exchange="OKX", symbol="btcusdt"))

        assert request.symbol == "BTC-USDT"

    def test_custom_precision(self):
        """Test quantity precision override."""
        request = build_order_request(make_signal(), quantity_precision=3)

        assert request.quantity == "0.001"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
