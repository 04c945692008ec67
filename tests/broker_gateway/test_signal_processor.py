"""
Signal Processor Tests.

============================================================
PURPOSE
============================================================
End-to-end signal handling against MockBroker.

TEST CATEGORIES:
- Validation
- Open / close / no-change scenarios
- Leverage handling
- Submission retry and deadlines
- Batch processing
- Position drift, summary and sync

============================================================
"""

import asyncio
import logging
from decimal import Decimal

import pytest

from broker_gateway import (
    BrokerManager,
    BrokerNotFoundError,
    ConnectorRegistry,
    Credentials,
    InsufficientBalanceError,
    InvalidLeverageError,
    InvalidQuantityError,
    NetworkError,
    NotConnectedError,
    OrderNotFoundError,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    RequestTimeoutError,
    SignalOutcome,
    SignalProcessor,
    SignalProcessorConfig,
    SignalValidationError,
    TradingSignal,
)
from broker_gateway.connectors.mock import MockBroker, MockConfig


CREDENTIALS = Credentials(api_key="test-key", secret_key="test-secret")


def fast_config(**overrides) -> SignalProcessorConfig:
    fields = dict(retry_base_delay_seconds=0.0)
    fields.update(overrides)
    return SignalProcessorConfig(**fields)


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


async def make_processor(*names: str, config=None, **broker_config):
    """Processor over connected mock brokers named after exchanges."""
    manager = BrokerManager(ConnectorRegistry())
    brokers = {}
    for name in names or ("binance",):
        broker = MockBroker(MockConfig(name=name, **broker_config))
        await broker.initialize(CREDENTIALS)
        await manager.add_broker(broker)
        brokers[name] = broker
    return SignalProcessor(manager, config or fast_config()), brokers


# ============================================================
# VALIDATION
# ============================================================

class TestValidation:
    """Tests for validate_signal."""

    @pytest.mark.parametrize("overrides,message", [
        ({"symbol": ""}, "symbol is required"),
        ({"exchange": ""}, "exchange is required"),
        ({"action": ""}, "action is required"),
        ({"market_position_size": ""}, "market position size is required"),
    ])
    def test_missing_field(self, overrides, message):
        processor = SignalProcessor(BrokerManager(ConnectorRegistry()))

        with pytest.raises(SignalValidationError, match=message):
            processor.validate_signal(make_signal(**overrides))

    def test_none(self):
        processor = SignalProcessor(BrokerManager(ConnectorRegistry()))

        with pytest.raises(SignalValidationError, match="signal is nil"):
            processor.validate_signal(None)

    def test_zero_target_is_present(self):
        """Test that a flat target "0" is a valid size."""
        processor = SignalProcessor(BrokerManager(ConnectorRegistry()))

        processor.validate_signal(make_signal(market_position_size="0"))

    @pytest.mark.asyncio
    async def test_invalid_signal_makes_no_broker_call(self):
        processor, brokers = await make_processor()

        with pytest.raises(SignalValidationError):
            await processor.process_signal(make_signal(symbol=""))

        assert brokers["binance"].call_counts["place_order"] == 0


# ============================================================
# SCENARIOS
# ============================================================

class TestProcessSignal:
    """Tests for process_signal."""

    @pytest.mark.asyncio
    async def test_open_long(self):
        """Test 0 -> 0.001 buys 0.001 at market."""
        processor, brokers = await make_processor()

        result = await processor.process_signal(make_signal())

        assert result.outcome == SignalOutcome.FILLED
        assert result.success
        assert result.order.created_at.tzinfo is not None
        order = brokers["binance"].orders[0]
        assert order.side == OrderSide.BUY
        assert order.order_type == OrderType.MARKET
        assert order.quantity == "0.00100000"
        assert order.position_side == PositionSide.LONG
        assert order.reduce_only is False

    @pytest.mark.asyncio
    async def test_close_long_limit(self):
        """Test 0.001 -> 0 sells 0.001 as a reduce-only limit order."""
        processor, brokers = await make_processor()
        brokers["binance"].set_position("BTCUSDT", Decimal("0.001"))

        result = await processor.process_signal(make_signal(
            action="sell",
            prev_market_position_size="0.001",
            market_position_size="0",
            order_type="limit",
            price="51000",
        ))

        assert result.outcome == SignalOutcome.SUBMITTED
        order = result.order
        assert order.side == OrderSide.SELL
        assert order.order_type == OrderType.LIMIT
        assert order.price == "51000"
        assert order.position_side == PositionSide.BOTH
        assert order.reduce_only is True

    @pytest.mark.asyncio
    async def test_no_change_is_skipped(self):
        """Test 0.001 -> 0.001 places nothing and does not fail."""
        processor, brokers = await make_processor()

        result = await processor.process_signal(make_signal(
            prev_market_position_size="0.001",
            market_position_size="0.001",
        ))

        assert result.outcome == SignalOutcome.SKIPPED
        assert result.order is None
        assert result.success
        assert brokers["binance"].call_counts["place_order"] == 0

    @pytest.mark.asyncio
    async def test_exchange_name_is_case_insensitive(self):
        processor, _ = await make_processor()

        result = await processor.process_signal(make_signal(exchange="Binance"))

        assert result.outcome == SignalOutcome.FILLED

    @pytest.mark.asyncio
    async def test_unknown_exchange(self):
        processor, _ = await make_processor()

        with pytest.raises(BrokerNotFoundError):
            await processor.process_signal(make_signal(exchange="kraken"))

    @pytest.mark.asyncio
    async def test_disconnected_broker(self):
        processor, brokers = await make_processor()
        brokers["binance"].disconnect()

        with pytest.raises(NotConnectedError):
            await processor.process_signal(make_signal())

    @pytest.mark.asyncio
    async def test_bad_size(self):
        processor, _ = await make_processor()

        with pytest.raises(InvalidQuantityError):
            await processor.process_signal(make_signal(market_position_size="lots"))


# ============================================================
# LEVERAGE
# ============================================================

class TestLeverage:
    """Tests for per-signal leverage."""

    @pytest.mark.asyncio
    async def test_leverage_applied_before_order(self):
        processor, brokers = await make_processor()

        result = await processor.process_signal(make_signal(leverage=10))

        assert brokers["binance"].leverage["BTCUSDT"] == 10
        assert result.leverage_error is None

    @pytest.mark.asyncio
    async def test_leverage_failure_is_not_fatal(self, caplog):
        processor, brokers = await make_processor()

        with caplog.at_level(logging.WARNING):
            result = await processor.process_signal(make_signal(leverage=200))

        assert result.outcome == SignalOutcome.FILLED
        assert isinstance(result.leverage_error, InvalidLeverageError)
        assert brokers["binance"].call_counts["place_order"] == 1
        assert "Failed to set leverage" in caplog.text

    @pytest.mark.asyncio
    async def test_zero_leverage_is_left_alone(self):
        processor, brokers = await make_processor()

        await processor.process_signal(make_signal(leverage=0))

        assert brokers["binance"].call_counts["set_leverage"] == 0


# ============================================================
# SUBMISSION
# ============================================================

class TestSubmission:
    """Tests for bounded retry and deadlines."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_once(self):
        processor, brokers = await make_processor()
        brokers["binance"].inject_error("place_order", NetworkError())

        result = await processor.process_signal(make_signal())

        assert result.outcome == SignalOutcome.FILLED
        assert brokers["binance"].call_counts["place_order"] == 2

    @pytest.mark.asyncio
    async def test_at_most_two_attempts(self):
        processor, brokers = await make_processor()
        brokers["binance"].inject_error("place_order", NetworkError(), count=3)

        with pytest.raises(NetworkError):
            await processor.process_signal(make_signal())

        assert brokers["binance"].call_counts["place_order"] == 2

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self):
        processor, brokers = await make_processor()
        brokers["binance"].inject_error("place_order", InsufficientBalanceError())

        with pytest.raises(InsufficientBalanceError):
            await processor.process_signal(make_signal())

        assert brokers["binance"].call_counts["place_order"] == 1

    @pytest.mark.asyncio
    async def test_order_deadline(self):
        processor, brokers = await make_processor(
            config=fast_config(order_timeout_seconds=0.01, order_retries=0),
            latency_seconds=0.5,
        )

        with pytest.raises(RequestTimeoutError):
            await processor.process_signal(make_signal())

        assert brokers["binance"].orders == []


# ============================================================
# BATCH
# ============================================================

class TestProcessSignals:
    """Tests for concurrent batch processing."""

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        processor, _ = await make_processor("binance", "bitget")
        signals = [
            make_signal(symbol="BTCUSDT"),
            make_signal(symbol="ETHUSDT", exchange="bitget"),
            make_signal(symbol="", exchange="binance"),
            make_signal(symbol="SOLUSDT", prev_market_position_size="0.001"),
        ]

        results = await processor.process_signals(signals)

        assert [r.signal for r in results] == signals
        assert [r.outcome for r in results] == [
            SignalOutcome.FILLED,
            SignalOutcome.FILLED,
            SignalOutcome.FAILED,
            SignalOutcome.SKIPPED,
        ]
        assert isinstance(results[2].error, SignalValidationError)
        assert not results[2].success
        assert not results[2].processed
        assert results[0].processed

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        processor, brokers = await make_processor(
            config=fast_config(max_concurrency=2),
            latency_seconds=0.01,
        )
        broker = brokers["binance"]
        active = 0
        peak = 0
        original = broker.place_order

        async def tracking_place_order(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await original(request)
            finally:
                active -= 1

        broker.place_order = tracking_place_order
        signals = [make_signal(symbol=s) for s in ("BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT")]

        results = await processor.process_signals(signals)

        assert all(r.outcome == SignalOutcome.FILLED for r in results)
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        processor, _ = await make_processor()

        assert await processor.process_signals([]) == []


# ============================================================
# ORDER TRACKING
# ============================================================

def limit_signal(**overrides) -> TradingSignal:
    fields = dict(order_type="limit", price="49000")
    fields.update(overrides)
    return make_signal(**fields)


class TestRefreshOrder:
    """Tests for re-reading submitted orders."""

    @pytest.mark.asyncio
    async def test_resting_order_becomes_filled(self):
        processor, brokers = await make_processor()
        result = await processor.process_signal(limit_signal())
        assert result.outcome == SignalOutcome.SUBMITTED

        brokers["binance"].fill_order(result.order.id)
        refreshed = await processor.refresh_order(result)

        assert refreshed.outcome == SignalOutcome.FILLED
        assert refreshed.order.status == OrderStatus.FILLED
        assert refreshed.success
        assert result.outcome == SignalOutcome.SUBMITTED
        assert brokers["binance"].call_counts["get_order"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_order_is_not_a_success(self):
        processor, brokers = await make_processor()
        result = await processor.process_signal(limit_signal())

        await brokers["binance"].cancel_order("BTCUSDT", result.order.id)
        refreshed = await processor.refresh_order(result)

        assert refreshed.outcome == SignalOutcome.CANCELED
        assert refreshed.processed
        assert not refreshed.success

    @pytest.mark.asyncio
    async def test_still_resting(self):
        processor, _ = await make_processor()
        result = await processor.process_signal(limit_signal())

        refreshed = await processor.refresh_order(result)

        assert refreshed.outcome == SignalOutcome.SUBMITTED
        assert refreshed.order.status == OrderStatus.NEW

    @pytest.mark.asyncio
    async def test_terminal_order_is_not_queried(self):
        processor, brokers = await make_processor()
        result = await processor.process_signal(make_signal())

        refreshed = await processor.refresh_order(result)

        assert refreshed is result
        assert brokers["binance"].call_counts["get_order"] == 0

    @pytest.mark.asyncio
    async def test_skipped_result_is_unchanged(self):
        processor, _ = await make_processor()
        result = await processor.process_signal(make_signal(prev_market_position_size="0.001"))

        assert await processor.refresh_order(result) is result

    @pytest.mark.asyncio
    async def test_query_error_propagates(self):
        processor, brokers = await make_processor()
        result = await processor.process_signal(limit_signal())
        brokers["binance"].inject_error("get_order", OrderNotFoundError())

        with pytest.raises(OrderNotFoundError):
            await processor.refresh_order(result)

    @pytest.mark.asyncio
    async def test_query_deadline(self):
        processor, _ = await make_processor(
            config=fast_config(query_timeout_seconds=0.01),
            latency_seconds=0.05,
        )
        result = await processor.process_signal(limit_signal())

        with pytest.raises(RequestTimeoutError):
            await processor.refresh_order(result)


# ============================================================
# POSITIONS
# ============================================================

class TestPositionDrift:
    """Tests for previous-size verification."""

    def test_within_tolerance(self):
        processor = SignalProcessor(BrokerManager(ConnectorRegistry()))

        assert not processor.check_position_drift(
            make_signal(prev_market_position_size="0.001"), Decimal("0.00105"),
        )

    def test_drift_warns(self, caplog):
        processor = SignalProcessor(BrokerManager(ConnectorRegistry()))

        with caplog.at_level(logging.WARNING):
            drifted = processor.check_position_drift(
                make_signal(prev_market_position_size="0.001"), Decimal("0.5"),
            )

        assert drifted
        assert "Position size mismatch" in caplog.text

    def test_configurable_tolerance(self):
        processor = SignalProcessor(
            BrokerManager(ConnectorRegistry()),
            SignalProcessorConfig(position_drift_tolerance=Decimal("1")),
        )

        assert not processor.check_position_drift(
            make_signal(prev_market_position_size="0"), Decimal("0.5"),
        )

    @pytest.mark.asyncio
    async def test_drift_does_not_block_order(self):
        processor, brokers = await make_processor(config=fast_config(verify_previous_position=True))
        brokers["binance"].set_position("BTCUSDT", Decimal("3"))

        result = await processor.process_signal(make_signal(
            prev_market_position_size="1",
            market_position_size="2",
        ))

        assert result.outcome == SignalOutcome.FILLED
        assert brokers["binance"].call_counts["get_position"] == 1


class TestPositionSummary:
    """Tests for cross-broker position views."""

    @pytest.mark.asyncio
    async def test_summary_by_symbol_and_broker(self):
        processor, brokers = await make_processor("binance", "bitget")
        brokers["binance"].set_position("BTCUSDT", Decimal("1"))
        brokers["bitget"].set_position("BTCUSDT", Decimal("-2"))
        brokers["bitget"].set_position("ETHUSDT", Decimal("3"))

        summary = await processor.get_position_summary()

        assert sorted(summary) == ["BTCUSDT", "ETHUSDT"]
        assert summary["BTCUSDT"]["binance"].size == "1"
        assert summary["BTCUSDT"]["bitget"].size == "-2"
        assert list(summary["ETHUSDT"]) == ["bitget"]

    @pytest.mark.asyncio
    async def test_summary_skips_failed_broker(self):
        processor, brokers = await make_processor("binance", "bitget")
        brokers["binance"].set_position("BTCUSDT", Decimal("1"))
        brokers["bitget"].disconnect()

        summary = await processor.get_position_summary()

        assert list(summary["BTCUSDT"]) == ["binance"]

    @pytest.mark.asyncio
    async def test_sync_positions(self):
        processor, brokers = await make_processor("binance", "bitget", "okx")
        brokers["binance"].set_position("BTCUSDT", Decimal("1"))
        brokers["bitget"].set_position("BTCUSDT", Decimal("0.5"))
        brokers["okx"].disconnect()

        errors = await processor.sync_positions("BTCUSDT", Position(symbol="BTCUSDT", size="1"))

        assert list(errors) == ["okx"]
        assert brokers["binance"].call_counts["place_order"] == 0
        assert brokers["bitget"].orders[0].side == OrderSide.BUY
        assert (await brokers["bitget"].get_position("BTCUSDT")).size == "1.00000000"

    @pytest.mark.asyncio
    async def test_sync_rejects_bad_target(self):
        processor, _ = await make_processor()

        with pytest.raises(InvalidQuantityError):
            await processor.sync_positions("BTCUSDT", Position(symbol="BTCUSDT", size="big"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
