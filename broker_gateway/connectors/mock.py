"""
Broker Gateway - Mock Broker.

============================================================
PURPOSE
============================================================
In-memory broker for testing the manager, signal processor
and configuration manager without an exchange.

FEATURES:
- Configurable latency
- Per-operation error injection
- Immediate market fills with position tracking
- Call counting for assertions
- Optional futures extension

============================================================
"""

import asyncio
import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Deque, Dict, List, Optional

from ..config import TimeoutConfig
from ..errors import (
    AggregateBrokerError,
    InvalidCredentialsError,
    InvalidLeverageError,
    InvalidSymbolError,
    NotConnectedError,
    OrderNotFoundError,
    PositionNotFoundError,
)
from ..types import (
    AccountInfo,
    Balance,
    Credentials,
    LeverageRequest,
    MarginType,
    MarginTypeRequest,
    Order,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    SymbolInfo,
)
from ..utils import RequestPacer, format_quantity, is_valid_leverage, to_decimal, validate_order_request
from .base import Broker, FuturesCapability
from .registry import ConnectorRegistry


logger = logging.getLogger(__name__)


DEFAULT_SYMBOLS = ["BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT"]


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for the mock broker."""

    name: str = "mock"
    """Name reported by the broker."""

    latency_seconds: float = 0.0
    """Simulated latency per call."""

    initial_balance: Decimal = Decimal("1500.0")
    """Initial USDT wallet balance."""

    initial_positions: Dict[str, Decimal] = field(default_factory=dict)
    """Initial signed position sizes by symbol."""

    default_price: Decimal = Decimal("50000.0")
    """Fill price for market orders."""

    immediate_fill: bool = True
    """Market orders fill on submission."""

    futures: bool = True
    """Expose the futures extension through as_futures()."""

    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    """Tradable symbols."""


# ============================================================
# MOCK BROKER
# ============================================================

class MockBroker(Broker, FuturesCapability):
    """
    Mock broker for testing.

    Positions are tracked in one-way mode, one signed size per
    symbol.
    """

    def __init__(
        self,
        config: Optional[MockConfig] = None,
        testnet: bool = False,
        timeouts: Optional[TimeoutConfig] = None,
        rate_limit_delay: float = 0.0,
    ):
        self._config = config or MockConfig()
        self._testnet = testnet
        self._timeouts = timeouts or TimeoutConfig()
        self._pacer = RequestPacer(rate_limit_delay)

        self._initialized = False
        self._connected = False
        self._hedge_mode = False

        self._positions: Dict[str, Decimal] = {}
        self._orders: Dict[str, Order] = {}
        self._prices: Dict[str, Decimal] = {}
        self.leverage: Dict[str, int] = {}
        self.margin_types: Dict[str, MarginType] = {}

        self._injected: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self.call_counts: Dict[str, int] = defaultdict(int)

        self._init_state()

    def _init_state(self) -> None:
        self._balance = self._config.initial_balance
        self._positions = {s: Decimal(q) for s, q in self._config.initial_positions.items() if q}

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def testnet(self) -> bool:
        return self._testnet

    @property
    def rate_limit_delay(self) -> float:
        return self._pacer.min_interval

    def as_futures(self) -> Optional[FuturesCapability]:
        return self if self._config.futures else None

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def inject_error(self, operation: str, error: BaseException, count: int = 1) -> None:
        """Raise error from the next count calls of operation."""
        for _ in range(count):
            self._injected[operation].append(error)

    def set_position(self, symbol: str, size: Decimal) -> None:
        if size:
            self._positions[symbol] = Decimal(size)
        else:
            self._positions.pop(symbol, None)

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = price

    def fill_order(self, order_id: str) -> None:
        """Fill a resting order at its limit price."""
        order = self._orders[order_id]
        quantity = to_decimal(order.quantity)
        price = to_decimal(order.price) or self._price(order.symbol)
        order.status = OrderStatus.FILLED
        order.executed_quantity = order.quantity
        order.cumulative_quote = str(quantity * price)
        order.updated_at = datetime.now(timezone.utc)
        self._fill(order.symbol, order.side, quantity)

    def disconnect(self) -> None:
        """Drop the connection without closing (simulates a lost session)."""
        self._connected = False

    @property
    def orders(self) -> List[Order]:
        """Every submitted order, oldest first."""
        return list(self._orders.values())

    def reset(self) -> None:
        self._orders.clear()
        self._injected.clear()
        self.call_counts.clear()
        self._init_state()

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _enter(self, operation: str, require_connection: bool = True) -> None:
        self.call_counts[operation] += 1
        await self._pacer.wait()

        if require_connection and not self._connected:
            raise NotConnectedError()

        if self._config.latency_seconds:
            await asyncio.sleep(self._config.latency_seconds)

        if self._injected[operation]:
            raise self._injected[operation].popleft()

    def _price(self, symbol: str) -> Decimal:
        return self._prices.get(symbol, self._config.default_price)

    def _position(self, symbol: str) -> Position:
        size = self._positions[symbol]
        return Position(
            symbol=symbol,
            position_side=PositionSide.BOTH,
            size=str(size),
            entry_price=str(self._price(symbol)),
            mark_price=str(self._price(symbol)),
            leverage=self.leverage.get(symbol, 1),
            margin_type=self.margin_types.get(symbol, MarginType.CROSSED),
            updated_at=datetime.now(timezone.utc),
        )

    def _fill(self, symbol: str, side: OrderSide, quantity: Decimal) -> None:
        delta = quantity if side == OrderSide.BUY else -quantity
        self.set_position(symbol, self._positions.get(symbol, Decimal("0")) + delta)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def initialize(self, credentials: Optional[Credentials]) -> None:
        if credentials is None or not credentials.api_key or not credentials.secret_key:
            raise InvalidCredentialsError()

        await self._enter("initialize", require_connection=False)
        self._initialized = True
        self._connected = True
        logger.info(f"MockBroker {self.name} connected")

    async def test_connection(self) -> None:
        if not self._initialized:
            raise NotConnectedError()
        await self._enter("test_connection", require_connection=False)

    def is_connected(self) -> bool:
        return self._connected

    async def close(self) -> None:
        self.call_counts["close"] += 1
        self._connected = False
        self._initialized = False
        if self._injected["close"]:
            raise self._injected["close"].popleft()
        logger.info(f"MockBroker {self.name} disconnected")

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_account_info(self) -> AccountInfo:
        await self._enter("get_account_info")
        balance = await self._usdt_balance()
        return AccountInfo(
            total_wallet_balance=balance.wallet_balance,
            total_margin_balance=balance.margin_balance,
            available_balance=balance.available_balance,
            max_withdraw_amount=balance.max_withdraw_amount,
            assets=[balance],
            positions=[self._position(s) for s in sorted(self._positions)],
            can_trade=True,
            can_withdraw=True,
            updated_at=datetime.now(timezone.utc),
        )

    async def _usdt_balance(self) -> Balance:
        value = str(self._balance)
        return Balance(
            asset="USDT",
            wallet_balance=value,
            margin_balance=value,
            cross_wallet_balance=value,
            available_balance=value,
            max_withdraw_amount=value,
        )

    async def get_balance(self, asset: str) -> Balance:
        await self._enter("get_balance")
        if asset == "USDT":
            return await self._usdt_balance()
        return Balance(asset=asset)

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    async def get_positions(self) -> List[Position]:
        await self._enter("get_positions")
        return [self._position(s) for s in sorted(self._positions)]

    async def get_position(self, symbol: str) -> Position:
        await self._enter("get_position")
        if symbol not in self._positions:
            raise PositionNotFoundError(f"position not found: {symbol}")
        return self._position(symbol)

    async def set_leverage(self, request: LeverageRequest) -> None:
        await self._enter("set_leverage")
        if not is_valid_leverage(request.leverage):
            raise InvalidLeverageError()
        self.leverage[request.symbol] = request.leverage

    async def set_margin_type(self, request: MarginTypeRequest) -> None:
        await self._enter("set_margin_type")
        self.margin_types[request.symbol] = request.margin_type

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> Order:
        validate_order_request(request)
        await self._enter("place_order")

        if request.symbol not in self._config.symbols:
            raise InvalidSymbolError(f"invalid symbol: {request.symbol}")

        quantity = to_decimal(request.quantity)
        now = datetime.now(timezone.utc)
        order = Order(
            id=str(uuid.uuid4()),
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            status=OrderStatus.NEW,
            client_order_id=str(uuid.uuid4()),
            quantity=request.quantity,
            price=request.price or "0",
            time_in_force=request.time_in_force,
            position_side=request.position_side or PositionSide.BOTH,
            reduce_only=request.reduce_only,
            created_at=now,
            updated_at=now,
        )

        if self._config.immediate_fill and request.order_type == OrderType.MARKET:
            price = self._price(request.symbol)
            order.status = OrderStatus.FILLED
            order.executed_quantity = request.quantity
            order.cumulative_quote = str(quantity * price)
            self._fill(request.symbol, request.side, quantity)

        self._orders[order.id] = order
        return replace(order)

    async def get_order(self, symbol: str, order_id: str) -> Order:
        await self._enter("get_order")
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise OrderNotFoundError()
        return replace(order)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._enter("cancel_order")
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol or order.status.is_terminal():
            raise OrderNotFoundError()
        order.status = OrderStatus.CANCELED
        order.updated_at = datetime.now(timezone.utc)

    async def get_open_orders(self, symbol: str = "") -> List[Order]:
        await self._enter("get_open_orders")
        return [
            o for o in self._orders.values()
            if not o.status.is_terminal() and (not symbol or o.symbol == symbol)
        ]

    async def get_order_history(self, symbol: str, limit: int = 0) -> List[Order]:
        await self._enter("get_order_history")
        history = [o for o in self._orders.values() if o.symbol == symbol]
        if limit:
            history = history[-limit:]
        return history

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    def _symbol_info(self, symbol: str) -> SymbolInfo:
        return SymbolInfo(
            symbol=symbol,
            base_asset=symbol.replace("USDT", ""),
            quote_asset="USDT",
            status="TRADING",
            base_asset_precision=8,
            quote_asset_precision=8,
            order_types=[OrderType.LIMIT, OrderType.MARKET],
            min_qty="0.001",
            max_qty="1000",
            step_size="0.001",
            min_price="0.01",
            max_price="1000000",
            tick_size="0.01",
            min_notional="10",
        )

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        await self._enter("get_symbol_info")
        if symbol not in self._config.symbols:
            raise InvalidSymbolError(f"invalid symbol: {symbol}")
        return self._symbol_info(symbol)

    async def get_exchange_info(self) -> List[SymbolInfo]:
        await self._enter("get_exchange_info")
        return [self._symbol_info(s) for s in self._config.symbols]

    # --------------------------------------------------------
    # FUTURES EXTENSION
    # --------------------------------------------------------

    async def close_position(self, symbol: str, position_side: PositionSide) -> None:
        await self._enter("close_position")
        size = self._positions.get(symbol, Decimal("0"))
        if size == 0:
            return

        await self.place_order(OrderRequest(
            symbol=symbol,
            side=OrderSide.SELL if size > 0 else OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=format_quantity(abs(size), 8),
            position_side=position_side,
            reduce_only=True,
        ))

    async def close_all_positions(self) -> None:
        await self._enter("close_all_positions")
        errors: Dict[str, BaseException] = {}

        for symbol in sorted(self._positions):
            try:
                await self.close_position(symbol, PositionSide.BOTH)
            except Exception as e:
                errors[f"{symbol}:{PositionSide.BOTH.value}"] = e

        if errors:
            raise AggregateBrokerError("failed to close positions", errors)

    async def set_position_mode(self, dual_side_position: bool) -> None:
        await self._enter("set_position_mode")
        self._hedge_mode = dual_side_position

    async def get_position_mode(self) -> bool:
        await self._enter("get_position_mode")
        return self._hedge_mode


def register(registry: ConnectorRegistry) -> None:
    """Register the mock connector factory."""
    registry.register("mock", MockBroker)
