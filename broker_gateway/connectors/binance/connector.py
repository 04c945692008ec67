"""
Binance Futures Broker.

============================================================
PURPOSE
============================================================
Broker implementation for Binance USD-M Futures.

SUPPORTED FEATURES:
- Market and limit orders
- Hedge mode and one-way mode
- Leverage and margin type
- Position close helpers
- Stop loss / take profit orders

DEADLINES:
- Initialization probe: connect_timeout_seconds (10s)
- Order submit / cancel: order_timeout_seconds (30s)
- Order status: query_timeout_seconds (30s)
- Account and position scans: caller's deadline only

Failures surface as BrokerError("binance", CODE, message)
wrapping a gateway sentinel, which wraps the raw client error.

============================================================
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from ...config import TimeoutConfig
from ...errors import (
    AggregateBrokerError,
    BrokerError,
    InvalidCredentialsError,
    NotConnectedError,
    OrderNotFoundError,
    PositionNotFoundError,
)
from ...types import (
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
from ...utils import format_quantity, to_decimal, validate_order_request
from ..base import Broker, FuturesCapability
from .client import BinanceAPIError, BinanceFuturesClient
from .errors import NO_CHANGE_CODES, classify_exception


logger = logging.getLogger(__name__)


ClientFactory = Callable[..., BinanceFuturesClient]

CLOSE_QUANTITY_PRECISION = 8


# ============================================================
# CONVERSION HELPERS
# ============================================================

def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        # EXPIRED_IN_MATCH and future additions
        if value.startswith("EXPIRED"):
            return OrderStatus.EXPIRED
        logger.warning(f"Unknown Binance order status: {value}")
        return OrderStatus.NEW


def _parse_order_type(value: str) -> OrderType:
    # STOP_MARKET, TAKE_PROFIT_MARKET and friends execute at market
    if value.endswith("MARKET"):
        return OrderType.MARKET
    return OrderType.LIMIT


def _parse_position_side(value: Optional[str]) -> PositionSide:
    try:
        return PositionSide(value or "BOTH")
    except ValueError:
        return PositionSide.BOTH


def _parse_margin_type(value: Any) -> MarginType:
    if isinstance(value, bool):
        return MarginType.ISOLATED if value else MarginType.CROSSED
    return MarginType.ISOLATED if str(value).lower() == "isolated" else MarginType.CROSSED


def _convert_order(data: Dict[str, Any]) -> Order:
    return Order(
        id=str(data["orderId"]),
        symbol=data.get("symbol", ""),
        side=OrderSide(data["side"]),
        order_type=_parse_order_type(data.get("type", "MARKET")),
        status=_parse_status(data.get("status", "NEW")),
        client_order_id=data.get("clientOrderId", ""),
        quantity=data.get("origQty", "0"),
        price=data.get("price", "0"),
        executed_quantity=data.get("executedQty", "0"),
        cumulative_quote=data.get("cumQuote", "0"),
        time_in_force=data.get("timeInForce", ""),
        position_side=_parse_position_side(data.get("positionSide")),
        reduce_only=bool(data.get("reduceOnly", False)),
        created_at=_ms_to_datetime(data.get("time") or data.get("updateTime")),
        updated_at=_ms_to_datetime(data.get("updateTime")),
    )


def _convert_position(data: Dict[str, Any]) -> Position:
    """Convert a positionRisk entry."""
    return Position(
        symbol=data["symbol"],
        position_side=_parse_position_side(data.get("positionSide")),
        size=data.get("positionAmt", "0"),
        entry_price=data.get("entryPrice", "0"),
        mark_price=data.get("markPrice", "0"),
        unrealized_pnl=data.get("unRealizedProfit", "0"),
        leverage=int(data.get("leverage") or 0),
        margin_type=_parse_margin_type(data.get("marginType", "cross")),
        isolated_margin=data.get("isolatedMargin", ""),
        updated_at=_ms_to_datetime(data.get("updateTime")),
    )


def _convert_account_position(data: Dict[str, Any]) -> Position:
    """Convert a position entry of the account endpoint."""
    return Position(
        symbol=data["symbol"],
        position_side=_parse_position_side(data.get("positionSide")),
        size=data.get("positionAmt", "0"),
        entry_price=data.get("entryPrice", "0"),
        unrealized_pnl=data.get("unrealizedProfit", "0"),
        leverage=int(data.get("leverage") or 0),
        margin_type=_parse_margin_type(data.get("isolated", False)),
        isolated_margin=data.get("isolatedWallet", ""),
        maintenance_margin=data.get("maintMargin", "0"),
        initial_margin=data.get("initialMargin", "0"),
        open_order_margin=data.get("openOrderInitialMargin", "0"),
        updated_at=_ms_to_datetime(data.get("updateTime")),
    )


def _convert_balance(data: Dict[str, Any]) -> Balance:
    return Balance(
        asset=data["asset"],
        wallet_balance=data.get("walletBalance", "0"),
        unrealized_pnl=data.get("unrealizedProfit", "0"),
        margin_balance=data.get("marginBalance", "0"),
        maint_margin=data.get("maintMargin", "0"),
        initial_margin=data.get("initialMargin", "0"),
        position_initial_margin=data.get("positionInitialMargin", "0"),
        open_order_initial_margin=data.get("openOrderInitialMargin", "0"),
        cross_wallet_balance=data.get("crossWalletBalance", "0"),
        cross_un_pnl=data.get("crossUnPnl", "0"),
        available_balance=data.get("availableBalance", "0"),
        max_withdraw_amount=data.get("maxWithdrawAmount", "0"),
    )


def _is_open(position: Position) -> bool:
    return to_decimal(position.size) != 0


def _convert_symbol(data: Dict[str, Any]) -> SymbolInfo:
    info = SymbolInfo(
        symbol=data["symbol"],
        base_asset=data.get("baseAsset", ""),
        quote_asset=data.get("quoteAsset", ""),
        status=data.get("status", ""),
        base_asset_precision=int(data.get("baseAssetPrecision", 0)),
        quote_asset_precision=int(data.get("quotePrecision", 0)),
        order_types=[
            OrderType(t) for t in data.get("orderTypes", [])
            if t in (OrderType.MARKET.value, OrderType.LIMIT.value)
        ],
    )

    for f in data.get("filters", []):
        filter_type = f.get("filterType")
        if filter_type == "LOT_SIZE":
            info.min_qty = f.get("minQty", "")
            info.max_qty = f.get("maxQty", "")
            info.step_size = f.get("stepSize", "")
        elif filter_type == "PRICE_FILTER":
            info.min_price = f.get("minPrice", "")
            info.max_price = f.get("maxPrice", "")
            info.tick_size = f.get("tickSize", "")
        elif filter_type == "MIN_NOTIONAL":
            info.min_notional = f.get("notional", f.get("minNotional", ""))

    return info


# ============================================================
# BINANCE BROKER
# ============================================================

class BinanceBroker(Broker, FuturesCapability):
    """
    Binance USD-M Futures broker.

    In one-way mode positionSide is never sent and reduce-only
    is passed through. In hedge mode positionSide is always sent
    (derived from the order side when the request leaves it as
    BOTH) and reduceOnly is omitted, as Binance requires.
    """

    def __init__(
        self,
        testnet: bool = False,
        timeouts: Optional[TimeoutConfig] = None,
        hedge_mode: bool = False,
        base_url: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
        rate_limit_delay: float = 0.0,
    ):
        """
        Initialize broker.

        Args:
            testnet: Use the futures testnet
            timeouts: Per-call deadlines
            hedge_mode: Account is in dual-side position mode
            base_url: Override the REST endpoint
            client_factory: Builds the REST client (tests inject fakes)
            rate_limit_delay: Minimum seconds between REST requests
        """
        self._testnet = testnet
        self._timeouts = timeouts or TimeoutConfig()
        self._hedge_mode = hedge_mode
        self._base_url = base_url
        self._client_factory = client_factory or BinanceFuturesClient
        self._rate_limit_delay = rate_limit_delay

        self._client: Optional[BinanceFuturesClient] = None
        self._connected = False

    @property
    def name(self) -> str:
        return "binance"

    @property
    def testnet(self) -> bool:
        return self._testnet

    @property
    def hedge_mode(self) -> bool:
        return self._hedge_mode

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _require_client(self) -> BinanceFuturesClient:
        if not self._connected or self._client is None:
            raise NotConnectedError()
        return self._client

    def _wrap(self, err: BaseException, code: str, message: str) -> BrokerError:
        mapped_code, sentinel = classify_exception(err)
        return BrokerError(self.name, mapped_code or code, message, sentinel)

    async def _call(
        self,
        operation: Awaitable[Any],
        code: str,
        message: str,
        timeout: Optional[float] = None,
        ignore_codes: FrozenSet[int] = frozenset(),
    ) -> Any:
        """
        Await a client call, translating its failures.

        Args:
            operation: Client coroutine
            code: Error code used when the failure is unclassified
            message: Human message for the BrokerError
            timeout: Deadline in seconds, None for the caller's
            ignore_codes: Binance codes treated as success

        Returns:
            Decoded response, None for an ignored error
        """
        try:
            if timeout:
                return await asyncio.wait_for(operation, timeout)
            return await operation
        except BrokerError:
            raise
        except BinanceAPIError as e:
            if e.code in ignore_codes:
                logger.debug(f"{message}: already applied ({e.message})")
                return None
            wrapped = self._wrap(e, code, message)
            raise wrapped from wrapped.cause
        except Exception as e:
            wrapped = self._wrap(e, code, message)
            raise wrapped from wrapped.cause

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def initialize(self, credentials: Optional[Credentials]) -> None:
        """
        Create the REST client and probe server time.

        The broker is connected only if the probe succeeds within
        connect_timeout_seconds.
        """
        if credentials is None or not credentials.api_key or not credentials.secret_key:
            raise InvalidCredentialsError()

        if self._client is not None:
            await self.close()

        client = self._client_factory(
            api_key=credentials.api_key,
            api_secret=credentials.secret_key,
            testnet=self._testnet,
            base_url=self._base_url,
            connect_timeout=self._timeouts.connect_timeout_seconds,
            min_request_interval=self._rate_limit_delay,
        )

        try:
            await self._call(
                client.server_time(),
                "CONNECTION_FAILED",
                "failed to connect to Binance",
                timeout=self._timeouts.connect_timeout_seconds,
            )
        except BaseException:
            await client.close()
            raise

        self._client = client
        self._connected = True
        logger.info(f"Connected to Binance Futures ({'testnet' if self._testnet else 'mainnet'})")

    async def test_connection(self) -> None:
        if self._client is None:
            raise NotConnectedError()

        await self._call(
            self._client.server_time(),
            "CONNECTION_FAILED",
            "connection test failed",
            timeout=self._timeouts.connect_timeout_seconds,
        )

    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def close(self) -> None:
        self._connected = False
        if self._client is not None:
            client, self._client = self._client, None
            await client.close()
            logger.info("Disconnected from Binance Futures")

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_account_info(self) -> AccountInfo:
        client = self._require_client()
        data = await self._call(client.account(), "ACCOUNT_ERROR", "failed to get account info")

        return AccountInfo(
            total_wallet_balance=data.get("totalWalletBalance", "0"),
            total_unrealized_pnl=data.get("totalUnrealizedProfit", "0"),
            total_margin_balance=data.get("totalMarginBalance", "0"),
            total_position_initial_margin=data.get("totalPositionInitialMargin", "0"),
            total_open_order_initial_margin=data.get("totalOpenOrderInitialMargin", "0"),
            total_cross_wallet_balance=data.get("totalCrossWalletBalance", "0"),
            total_cross_un_pnl=data.get("totalCrossUnPnl", "0"),
            available_balance=data.get("availableBalance", "0"),
            max_withdraw_amount=data.get("maxWithdrawAmount", "0"),
            assets=[_convert_balance(a) for a in data.get("assets", [])],
            positions=[
                p for p in (_convert_account_position(d) for d in data.get("positions", []))
                if _is_open(p)
            ],
            can_trade=bool(data.get("canTrade", False)),
            can_withdraw=bool(data.get("canWithdraw", False)),
            fee_tier=int(data.get("feeTier", 0)),
            updated_at=_ms_to_datetime(data.get("updateTime")),
        )

    async def get_balance(self, asset: str) -> Balance:
        account = await self.get_account_info()

        for balance in account.assets:
            if balance.asset == asset:
                return balance

        raise BrokerError(self.name, "ASSET_NOT_FOUND", f"asset {asset} not found")

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    async def get_position_risk(self, symbol: str = "") -> List[Position]:
        """
        Raw position risk entries, flat ones included.

        Args:
            symbol: Restrict to one symbol, empty for all
        """
        client = self._require_client()
        data = await self._call(
            client.position_risk(symbol or None),
            "POSITION_ERROR",
            "failed to get position risk",
        )
        return [_convert_position(d) for d in data]

    async def get_positions(self) -> List[Position]:
        return [p for p in await self.get_position_risk() if _is_open(p)]

    async def get_position(self, symbol: str) -> Position:
        for position in await self.get_position_risk(symbol):
            if position.symbol == symbol and _is_open(position):
                return position

        raise PositionNotFoundError(f"position not found: {symbol}")

    async def set_leverage(self, request: LeverageRequest) -> None:
        client = self._require_client()
        await self._call(
            client.change_leverage(request.symbol, request.leverage),
            "LEVERAGE_ERROR",
            f"failed to set leverage for {request.symbol}",
        )
        logger.info(f"Set leverage {request.leverage}x for {request.symbol}")

    async def set_margin_type(self, request: MarginTypeRequest) -> None:
        client = self._require_client()
        await self._call(
            client.change_margin_type(request.symbol, request.margin_type.value),
            "MARGIN_TYPE_ERROR",
            f"failed to set margin type for {request.symbol}",
            ignore_codes=NO_CHANGE_CODES,
        )
        logger.info(f"Set margin type {request.margin_type.value} for {request.symbol}")

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    def _resolve_position_side(self, request: OrderRequest) -> PositionSide:
        if request.position_side in (PositionSide.LONG, PositionSide.SHORT):
            return request.position_side
        # Closing a long sells it, closing a short buys it back
        if request.reduce_only:
            return PositionSide.LONG if request.side == OrderSide.SELL else PositionSide.SHORT
        return PositionSide.LONG if request.side == OrderSide.BUY else PositionSide.SHORT

    def _order_params(self, request: OrderRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.value,
            "type": request.order_type.value,
            "quantity": request.quantity,
        }

        if request.order_type == OrderType.LIMIT:
            params["price"] = request.price
            params["timeInForce"] = request.time_in_force or "GTC"

        if self._hedge_mode:
            params["positionSide"] = self._resolve_position_side(request).value
        elif request.reduce_only:
            params["reduceOnly"] = "true"

        return params

    async def place_order(self, request: OrderRequest) -> Order:
        validate_order_request(request)
        client = self._require_client()

        data = await self._call(
            client.new_order(**self._order_params(request)),
            "ORDER_FAILED",
            f"failed to place order on {request.symbol}",
            timeout=self._timeouts.order_timeout_seconds,
        )

        order = _convert_order(data)
        logger.info(
            f"Order placed: {order.id} {request.side.value} {request.quantity} "
            f"{request.symbol} status={order.status.value}"
        )
        return order

    async def _place_trigger_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: str,
        stop_price: str,
        order_type: str,
        position_side: Optional[PositionSide],
    ) -> Order:
        client = self._require_client()

        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "type": order_type,
            "quantity": quantity,
            "stopPrice": stop_price,
        }
        if self._hedge_mode and position_side in (PositionSide.LONG, PositionSide.SHORT):
            params["positionSide"] = position_side.value
        elif not self._hedge_mode:
            params["reduceOnly"] = "true"

        data = await self._call(
            client.new_order(**params),
            "ORDER_FAILED",
            f"failed to place {order_type} order on {symbol}",
            timeout=self._timeouts.order_timeout_seconds,
        )
        return _convert_order(data)

    async def place_stop_loss_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: str,
        stop_price: str,
        position_side: Optional[PositionSide] = None,
    ) -> Order:
        """Reduce-only STOP_MARKET order triggered at stop_price."""
        return await self._place_trigger_order(
            symbol, side, quantity, stop_price, "STOP_MARKET", position_side,
        )

    async def place_take_profit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: str,
        stop_price: str,
        position_side: Optional[PositionSide] = None,
    ) -> Order:
        """Reduce-only TAKE_PROFIT_MARKET order triggered at stop_price."""
        return await self._place_trigger_order(
            symbol, side, quantity, stop_price, "TAKE_PROFIT_MARKET", position_side,
        )

    def _order_id(self, order_id: str) -> int:
        try:
            return int(order_id)
        except (TypeError, ValueError):
            wrapped = BrokerError(self.name, "ORDER_NOT_FOUND", f"invalid order id: {order_id!r}", OrderNotFoundError())
            raise wrapped from wrapped.cause

    async def get_order(self, symbol: str, order_id: str) -> Order:
        client = self._require_client()
        data = await self._call(
            client.get_order(symbol, self._order_id(order_id)),
            "ORDER_ERROR",
            f"failed to get order {order_id}",
            timeout=self._timeouts.query_timeout_seconds,
        )
        return _convert_order(data)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        client = self._require_client()
        await self._call(
            client.cancel_order(symbol, self._order_id(order_id)),
            "CANCEL_FAILED",
            f"failed to cancel order {order_id}",
            timeout=self._timeouts.order_timeout_seconds,
        )
        logger.info(f"Order cancelled: {order_id} on {symbol}")

    async def get_open_orders(self, symbol: str = "") -> List[Order]:
        client = self._require_client()
        data = await self._call(
            client.open_orders(symbol or None),
            "ORDER_ERROR",
            "failed to get open orders",
        )
        return [_convert_order(d) for d in data]

    async def get_order_history(self, symbol: str, limit: int = 0) -> List[Order]:
        client = self._require_client()
        data = await self._call(
            client.all_orders(symbol, limit or None),
            "ORDER_ERROR",
            f"failed to get order history for {symbol}",
        )
        return [_convert_order(d) for d in data]

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    async def get_exchange_info(self) -> List[SymbolInfo]:
        client = self._require_client()
        data = await self._call(
            client.exchange_info(),
            "EXCHANGE_INFO_ERROR",
            "failed to get exchange info",
        )
        return [_convert_symbol(s) for s in data.get("symbols", [])]

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        for info in await self.get_exchange_info():
            if info.symbol == symbol:
                return info

        raise BrokerError(self.name, "SYMBOL_NOT_FOUND", f"symbol {symbol} not found")

    async def get_trading_status(self) -> Dict[str, Any]:
        """Account API trading status (quantitative rule indicators)."""
        client = self._require_client()
        return await self._call(
            client.api_trading_status(),
            "ACCOUNT_ERROR",
            "failed to get trading status",
        )

    # --------------------------------------------------------
    # FUTURES EXTENSION
    # --------------------------------------------------------

    async def close_position(self, symbol: str, position_side: PositionSide) -> None:
        """
        Close a position with a reduce-only market order.

        Does nothing when the position is already flat.
        """
        for position in await self.get_position_risk(symbol):
            if position.symbol != symbol:
                continue
            if position_side != PositionSide.BOTH and position.position_side != position_side:
                continue

            size = to_decimal(position.size)
            if size == 0:
                continue

            request = OrderRequest(
                symbol=symbol,
                side=OrderSide.SELL if size > 0 else OrderSide.BUY,
                order_type=OrderType.MARKET,
                quantity=format_quantity(abs(size), CLOSE_QUANTITY_PRECISION),
                position_side=position.position_side,
                reduce_only=True,
            )
            await self.place_order(request)
            logger.info(f"Closed {position.position_side.value} position on {symbol} ({position.size})")
            return

        logger.info(f"No open {position_side.value} position on {symbol}")

    async def close_all_positions(self) -> None:
        """
        Close every open position.

        Keeps going past individual failures.

        Raises:
            AggregateBrokerError: keyed by SYMBOL:SIDE
        """
        errors: Dict[str, BaseException] = {}

        for position in await self.get_positions():
            try:
                await self.close_position(position.symbol, position.position_side)
            except Exception as e:
                logger.error(f"Failed to close {position.symbol} {position.position_side.value}: {e}")
                errors[f"{position.symbol}:{position.position_side.value}"] = e

        if errors:
            raise AggregateBrokerError("failed to close positions", errors)

    async def set_position_mode(self, dual_side_position: bool) -> None:
        client = self._require_client()
        await self._call(
            client.change_position_mode(dual_side_position),
            "POSITION_MODE_ERROR",
            "failed to set position mode",
            ignore_codes=NO_CHANGE_CODES,
        )

        self._hedge_mode = dual_side_position
        logger.info(f"Position mode set to {'hedge' if dual_side_position else 'one-way'}")

    async def get_position_mode(self) -> bool:
        client = self._require_client()
        data = await self._call(
            client.get_position_mode(),
            "POSITION_MODE_ERROR",
            "failed to get position mode",
        )
        self._hedge_mode = bool(data.get("dualSidePosition", False))
        return self._hedge_mode

    async def get_income_history(
        self,
        symbol: str = "",
        income_type: str = "",
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        """Realized PnL, funding fee and commission records."""
        client = self._require_client()
        return await self._call(
            client.income_history(symbol or None, income_type or None, limit or None),
            "ACCOUNT_ERROR",
            "failed to get income history",
        )
