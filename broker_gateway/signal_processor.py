"""
Broker Gateway - Signal Processor.

============================================================
PURPOSE
============================================================
Turn position-change signals into orders on the right broker.

SIGNAL FLOW:
    Received -> Validated -> LeverageApplied (best effort)
    -> OrderComputed -> Submitted
    -> FILLED | PARTIALLY_FILLED | SUBMITTED | REJECTED
       | CANCELED | EXPIRED

    SUBMITTED / PARTIALLY_FILLED -> refresh_order() -> latest status

    No position change -> SKIPPED (no order, no error)

RULES:
- Validation never touches the network
- Leverage failures are logged and do not stop the order
- Order placement failures fail the signal
- At most order_retries + 1 submission attempts per signal

ORDERING:
Signals for the same symbol are not serialized here. Callers
needing strict per-symbol ordering must serialize upstream.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .calculator import build_order_request, calculate_order_quantity
from .config import SignalProcessorConfig
from .connectors.base import Broker
from .errors import (
    InvalidQuantityError,
    NoPositionChangeError,
    NotConnectedError,
    PositionNotFoundError,
    RequestTimeoutError,
    SignalValidationError,
)
from .manager import BrokerManager
from .types import (
    LeverageRequest,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    Position,
    TradingSignal,
)
from .utils import format_quantity, format_symbol, retry_with_backoff, to_decimal


logger = logging.getLogger(__name__)


# ============================================================
# RESULT TYPES
# ============================================================

class SignalOutcome(Enum):
    """Terminal state of a processed signal."""

    SKIPPED = "SKIPPED"
    """No position change required."""

    SUBMITTED = "SUBMITTED"
    """Order accepted, not yet filled."""

    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    FAILED = "FAILED"
    """Processing raised. Only produced by batch processing."""


ORDER_STATUS_OUTCOMES = {
    OrderStatus.NEW: SignalOutcome.SUBMITTED,
    OrderStatus.PENDING_CANCEL: SignalOutcome.SUBMITTED,
    OrderStatus.PARTIALLY_FILLED: SignalOutcome.PARTIALLY_FILLED,
    OrderStatus.FILLED: SignalOutcome.FILLED,
    OrderStatus.REJECTED: SignalOutcome.REJECTED,
    OrderStatus.CANCELED: SignalOutcome.CANCELED,
    OrderStatus.EXPIRED: SignalOutcome.EXPIRED,
}

SUCCESS_OUTCOMES = {
    SignalOutcome.SKIPPED,
    SignalOutcome.SUBMITTED,
    SignalOutcome.PARTIALLY_FILLED,
    SignalOutcome.FILLED,
}


@dataclass
class SignalResult:
    """Outcome of processing one signal."""

    signal: Optional[TradingSignal]
    outcome: SignalOutcome
    order: Optional[Order] = None
    """Submitted order, None when skipped or failed."""

    error: Optional[BaseException] = None
    """Processing error (FAILED only)."""

    leverage_error: Optional[BaseException] = None
    """Non-fatal leverage failure."""

    @property
    def processed(self) -> bool:
        """True unless processing raised."""
        return self.outcome != SignalOutcome.FAILED

    @property
    def success(self) -> bool:
        """False for failures and orders that ended unfilled."""
        return self.outcome in SUCCESS_OUTCOMES


# ============================================================
# SIGNAL PROCESSOR
# ============================================================

class SignalProcessor:
    """
    Processes trading signals and executes orders.
    """

    def __init__(
        self,
        manager: BrokerManager,
        config: Optional[SignalProcessorConfig] = None,
    ):
        self._manager = manager
        self._config = config or SignalProcessorConfig()

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate_signal(self, signal: Optional[TradingSignal]) -> None:
        """
        Check required fields.

        Raises:
            SignalValidationError: On the first missing field
        """
        if signal is None:
            raise SignalValidationError("signal is nil")
        if not signal.symbol:
            raise SignalValidationError("symbol is required")
        if not signal.exchange:
            raise SignalValidationError("exchange is required")
        if not signal.action:
            raise SignalValidationError("action is required")
        if not signal.market_position_size:
            raise SignalValidationError("market position size is required")

    # --------------------------------------------------------
    # SINGLE SIGNAL
    # --------------------------------------------------------

    async def process_signal(self, signal: TradingSignal) -> SignalResult:
        """
        Process one signal end to end.

        Args:
            signal: Inbound trading signal

        Returns:
            SignalResult (SKIPPED or an order outcome)

        Raises:
            SignalValidationError: If a required field is empty
            BrokerNotFoundError: If the exchange has no broker
            NotConnectedError: If the broker is not live
            InvalidQuantityError: If a size field is not numeric
            BrokerError: If order placement fails
        """
        self.validate_signal(signal)
        logger.info(f"Processing signal: {signal.action} {signal.symbol} on {signal.exchange}")

        exchange = signal.exchange.lower()
        broker = await self._manager.get_broker(exchange)
        if not broker.is_connected():
            raise NotConnectedError(f"broker {signal.exchange} is not connected")

        leverage_error = await self._apply_leverage(broker, signal)

        request = build_order_request(signal, self._config.quantity_precision)
        if request is None:
            logger.info(f"No order needed for signal: {signal.symbol}")
            return SignalResult(signal, SignalOutcome.SKIPPED, leverage_error=leverage_error)

        if self._config.verify_previous_position:
            await self._verify_previous_position(broker, signal, request.symbol)

        order = await self._submit(broker, request)
        logger.info(
            f"Order placed successfully: ID={order.id}, Symbol={order.symbol}, "
            f"Side={order.side.value}, Quantity={order.quantity}"
        )

        outcome = ORDER_STATUS_OUTCOMES.get(order.status, SignalOutcome.SUBMITTED)
        return SignalResult(signal, outcome, order=order, leverage_error=leverage_error)

    async def _apply_leverage(self, broker: Broker, signal: TradingSignal) -> Optional[BaseException]:
        if signal.leverage <= 0:
            return None

        request = LeverageRequest(
            symbol=format_symbol(signal.symbol, signal.exchange),
            leverage=signal.leverage,
        )
        try:
            await broker.set_leverage(request)
        except Exception as e:
            logger.warning(f"Failed to set leverage {signal.leverage}x for {request.symbol}: {e}")
            return e
        return None

    async def _submit(self, broker: Broker, request: OrderRequest) -> Order:
        timeout = self._config.order_timeout_seconds

        async def place() -> Order:
            try:
                return await asyncio.wait_for(broker.place_order(request), timeout)
            except asyncio.TimeoutError as e:
                raise RequestTimeoutError(
                    f"request timeout: order on {request.symbol} exceeded {timeout}s"
                ) from e

        return await retry_with_backoff(
            place,
            self._config.order_retries,
            self._config.retry_base_delay_seconds,
        )

    async def _verify_previous_position(
        self,
        broker: Broker,
        signal: TradingSignal,
        symbol: str,
    ) -> None:
        try:
            position = await broker.get_position(symbol)
            current = to_decimal(position.size)
        except PositionNotFoundError:
            current = Decimal("0")
        except Exception as e:
            logger.warning(f"Could not verify position for {symbol} on {broker.name}: {e}")
            return

        self.check_position_drift(signal, current)

    def check_position_drift(self, signal: TradingSignal, current_size: Decimal) -> bool:
        """
        Compare the known position with the signal's previous size.

        Only warns. A stale previous size never blocks the trade.

        Returns:
            True if the gap exceeds position_drift_tolerance
        """
        try:
            previous = to_decimal(signal.prev_market_position_size or "0")
        except (ArithmeticError, ValueError):
            logger.warning(f"Unparseable previous position size for {signal.symbol}")
            return False

        drift = abs(to_decimal(current_size) - previous)
        if drift > self._config.position_drift_tolerance:
            logger.warning(
                f"Position size mismatch for {signal.symbol} on {signal.exchange}: "
                f"expected {previous}, got {current_size}"
            )
            return True
        return False

    # --------------------------------------------------------
    # BATCH
    # --------------------------------------------------------

    async def process_signals(self, signals: List[TradingSignal]) -> List[SignalResult]:
        """
        Process signals concurrently, at most max_concurrency at once.

        Every signal gets a result; failures become FAILED
        results carrying the error.

        Returns:
            Results in input order
        """
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrency))

        async def run(signal: TradingSignal) -> SignalResult:
            async with semaphore:
                try:
                    return await self.process_signal(signal)
                except Exception as e:
                    symbol = signal.symbol if signal else "?"
                    logger.error(f"Signal processing failed for {symbol}: {e}")
                    return SignalResult(signal, SignalOutcome.FAILED, error=e)

        return list(await asyncio.gather(*(run(s) for s in signals)))

    # --------------------------------------------------------
    # ORDER TRACKING
    # --------------------------------------------------------

    async def refresh_order(self, result: SignalResult) -> SignalResult:
        """
        Re-read a submitted order and re-map the signal outcome.

        Results without an order, or whose order is already in a
        terminal status, come back unchanged.

        Returns:
            New SignalResult carrying the latest order

        Raises:
            BrokerNotFoundError: If the exchange has no broker
            NotConnectedError: If the broker is not live
            RequestTimeoutError: If the query exceeds query_timeout_seconds
            BrokerError: If the status query fails
        """
        order = result.order
        if order is None or order.status.is_terminal():
            return result

        exchange = result.signal.exchange.lower()
        broker = await self._manager.get_broker(exchange)
        if not broker.is_connected():
            raise NotConnectedError(f"broker {exchange} is not connected")

        timeout = self._config.query_timeout_seconds
        try:
            current = await asyncio.wait_for(broker.get_order(order.symbol, order.id), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"request timeout: status of order {order.id} exceeded {timeout}s"
            ) from e

        outcome = ORDER_STATUS_OUTCOMES.get(current.status, SignalOutcome.SUBMITTED)
        if outcome != result.outcome:
            logger.info(
                f"Order status changed for {order.symbol}: "
                f"{result.outcome.value} -> {outcome.value} (OrderID: {order.id})"
            )
        return replace(result, outcome=outcome, order=current)

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    async def get_position_summary(self) -> Dict[str, Dict[str, Position]]:
        """
        Positions across all brokers.

        Returns:
            symbol -> broker name -> Position
        """
        aggregate = await self._manager.get_all_positions()
        for name, err in aggregate.errors.items():
            logger.warning(f"Positions unavailable from {name}: {err}")

        summary: Dict[str, Dict[str, Position]] = {}
        for exchange, positions in aggregate.results.items():
            for position in positions:
                summary.setdefault(position.symbol, {})[exchange] = position

        return summary

    async def sync_positions(self, symbol: str, target_position: Position) -> Dict[str, BaseException]:
        """
        Drive every connected broker to the target size on symbol.

        Brokers already at the target are skipped.

        Returns:
            Broker name -> error, for failing brokers only
        """
        errors: Dict[str, BaseException] = {}

        try:
            target = to_decimal(target_position.size)
        except (ArithmeticError, ValueError) as e:
            raise InvalidQuantityError(f"invalid target position size: {target_position.size}") from e

        for name, broker in sorted((await self._manager.get_brokers()).items()):
            if not broker.is_connected():
                errors[name] = NotConnectedError(f"broker not connected: {name}")
                continue

            try:
                await self._sync_broker(broker, symbol, target, target_position)
            except Exception as e:
                logger.error(f"Position sync failed on {name}: {e}")
                errors[name] = e

        return errors

    async def _sync_broker(
        self,
        broker: Broker,
        symbol: str,
        target: Decimal,
        target_position: Position,
    ) -> None:
        try:
            current = to_decimal((await broker.get_position(symbol)).size)
        except PositionNotFoundError:
            current = Decimal("0")

        try:
            quantity, side = calculate_order_quantity(current, target)
        except NoPositionChangeError:
            return

        await broker.place_order(OrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.MARKET,
            quantity=format_quantity(quantity, self._config.quantity_precision),
            position_side=target_position.position_side,
        ))
        logger.info(f"Synced {symbol} on {broker.name}: {current} -> {target}")
