"""
Broker Gateway - Types.

============================================================
PURPOSE
============================================================
Data contract shared by connectors, the broker manager and
the signal processor.

CRITICAL PRINCIPLE:
    "Sizes travel as strings."
    Quantities, prices and position sizes are kept as the
    exchange reported them. Arithmetic converts to Decimal.

============================================================
"""

import os
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

from .logging_utils import mask_value


# ============================================================
# ORDER ENUMS
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    """Order type."""

    MARKET = "MARKET"
    """Execute at current market price."""

    LIMIT = "LIMIT"
    """Execute at specified price or better."""


class PositionSide(Enum):
    """Position side for hedge mode."""

    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"  # One-way mode


class MarginType(Enum):
    """Futures margin type."""

    ISOLATED = "ISOLATED"
    CROSSED = "CROSSED"


class PositionMode(Enum):
    """Account position mode."""

    HEDGE = "hedge"
    ONE_WAY = "one-way"


class OrderStatus(Enum):
    """
    Exchange order status.

    State Machine:

    NEW ──► PARTIALLY_FILLED ──► FILLED
     │            │
     ├────────────┴──► CANCELED (via PENDING_CANCEL)
     ├──► REJECTED
     └──► EXPIRED
    """

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    PENDING_CANCEL = "PENDING_CANCEL"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        }


# ============================================================
# CREDENTIALS
# ============================================================

@dataclass(frozen=True)
class Credentials:
    """
    API credentials for a broker.

    Immutable once constructed. Connectors read them during
    initialize() and do not keep the object.
    """

    api_key: str = ""
    secret_key: str = ""
    passphrase: str = ""
    """Third secret for exchanges like OKX."""

    def __repr__(self) -> str:
        return (
            f"Credentials(api_key={mask_value(self.api_key)!r}, "
            f"secret_key='***', passphrase={'***' if self.passphrase else ''!r})"
        )

    @classmethod
    def from_env(cls, exchange: str) -> "Credentials":
        """
        Create credentials from environment variables.

        Args:
            exchange: Exchange name, e.g. binance

        Returns:
            Credentials read from <EXCHANGE>_API_KEY,
            <EXCHANGE>_API_SECRET and <EXCHANGE>_PASSPHRASE
        """
        prefix = exchange.upper()
        return cls(
            api_key=os.environ.get(f"{prefix}_API_KEY", ""),
            secret_key=os.environ.get(f"{prefix}_API_SECRET", ""),
            passphrase=os.environ.get(f"{prefix}_PASSPHRASE", ""),
        )


# ============================================================
# ORDERS
# ============================================================

@dataclass
class OrderRequest:
    """Request to place an order."""

    symbol: str
    """Exchange-formatted symbol."""

    side: OrderSide
    """Order side."""

    order_type: OrderType
    """Order type."""

    quantity: str
    """Positive decimal string."""

    price: str = ""
    """Limit price. Required iff order_type is LIMIT."""

    position_side: Optional[PositionSide] = None
    """Position side for futures; None leaves it to the exchange."""

    time_in_force: str = ""
    """GTC, IOC, FOK."""

    reduce_only: bool = False
    """Only shrink an existing position."""


@dataclass
class Order:
    """Order as reported by the exchange after submission."""

    id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    status: OrderStatus
    client_order_id: str = ""
    quantity: str = "0"
    price: str = "0"
    executed_quantity: str = "0"
    cumulative_quote: str = "0"
    time_in_force: str = ""
    position_side: PositionSide = PositionSide.BOTH
    reduce_only: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "client_order_id": self.client_order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "quantity": self.quantity,
            "price": self.price,
            "executed_quantity": self.executed_quantity,
            "cumulative_quote": self.cumulative_quote,
            "status": self.status.value,
            "time_in_force": self.time_in_force,
            "position_side": self.position_side.value,
            "reduce_only": self.reduce_only,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ============================================================
# POSITIONS AND ACCOUNT
# ============================================================

@dataclass
class Position:
    """
    Futures position.

    size is signed: positive long, negative short. A zero size
    means the position is closed.
    """

    symbol: str
    position_side: PositionSide = PositionSide.BOTH
    size: str = "0"
    entry_price: str = "0"
    mark_price: str = "0"
    unrealized_pnl: str = "0"
    leverage: int = 0
    margin_type: MarginType = MarginType.CROSSED
    isolated_margin: str = ""
    maintenance_margin: str = "0"
    initial_margin: str = "0"
    open_order_margin: str = "0"
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "symbol": self.symbol,
            "position_side": self.position_side.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "unrealized_pnl": self.unrealized_pnl,
            "leverage": self.leverage,
            "margin_type": self.margin_type.value,
            "isolated_margin": self.isolated_margin,
            "maintenance_margin": self.maintenance_margin,
            "initial_margin": self.initial_margin,
            "open_order_margin": self.open_order_margin,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Balance:
    """Balance of a single asset."""

    asset: str
    wallet_balance: str = "0"
    unrealized_pnl: str = "0"
    margin_balance: str = "0"
    maint_margin: str = "0"
    initial_margin: str = "0"
    position_initial_margin: str = "0"
    open_order_initial_margin: str = "0"
    cross_wallet_balance: str = "0"
    cross_un_pnl: str = "0"
    available_balance: str = "0"
    max_withdraw_amount: str = "0"


@dataclass
class AccountInfo:
    """Snapshot of account balances and non-zero positions."""

    total_wallet_balance: str = "0"
    total_unrealized_pnl: str = "0"
    total_margin_balance: str = "0"
    total_position_initial_margin: str = "0"
    total_open_order_initial_margin: str = "0"
    total_cross_wallet_balance: str = "0"
    total_cross_un_pnl: str = "0"
    available_balance: str = "0"
    max_withdraw_amount: str = "0"
    assets: List[Balance] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    can_trade: bool = False
    can_withdraw: bool = False
    fee_tier: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_wallet_balance": self.total_wallet_balance,
            "total_unrealized_pnl": self.total_unrealized_pnl,
            "total_margin_balance": self.total_margin_balance,
            "available_balance": self.available_balance,
            "max_withdraw_amount": self.max_withdraw_amount,
            "assets": [vars(b).copy() for b in self.assets],
            "positions": [p.to_dict() for p in self.positions],
            "can_trade": self.can_trade,
            "can_withdraw": self.can_withdraw,
            "fee_tier": self.fee_tier,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class SymbolInfo:
    """Tradeable instrument metadata."""

    symbol: str
    base_asset: str = ""
    quote_asset: str = ""
    status: str = ""
    base_asset_precision: int = 0
    quote_asset_precision: int = 0
    order_types: List[OrderType] = field(default_factory=list)
    min_qty: str = ""
    max_qty: str = ""
    step_size: str = ""
    min_price: str = ""
    max_price: str = ""
    tick_size: str = ""
    min_notional: str = ""
    max_notional: str = ""


@dataclass
class LeverageRequest:
    """Request to change leverage for a symbol."""

    symbol: str
    leverage: int


@dataclass
class MarginTypeRequest:
    """Request to change margin type for a symbol."""

    symbol: str
    margin_type: MarginType


# ============================================================
# SIGNALS
# ============================================================

@dataclass
class TradingSignal:
    """
    Position-change signal derived from a charting alert.

    The core never receives an order quantity. It receives the
    target size (market_position_size) and the size before the
    alert fired (prev_market_position_size).
    """

    symbol: str = ""
    exchange: str = ""
    action: str = ""
    position_size: str = ""
    price: str = ""
    market_position: str = ""
    market_position_size: str = ""
    prev_market_position: str = ""
    prev_market_position_size: str = ""
    leverage: int = 0
    trading_mode: str = ""
    order_type: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingSignal":
        """
        Build a signal from a decoded webhook payload.

        Unknown keys are ignored. Numeric sizes are accepted and
        converted to strings.
        """
        def text(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value)

        leverage = data.get("leverage") or 0
        return cls(
            symbol=text("symbol"),
            exchange=text("exchange"),
            action=text("action"),
            position_size=text("position_size"),
            price=text("price"),
            market_position=text("market_position"),
            market_position_size=text("market_position_size"),
            prev_market_position=text("prev_market_position"),
            prev_market_position_size=text("prev_market_position_size"),
            leverage=int(leverage),
            trading_mode=text("trading_mode"),
            order_type=text("order_type"),
        )


# ============================================================
# HEALTH
# ============================================================

@dataclass
class BrokerHealth:
    """Health status of a broker. Recomputed on every check."""

    name: str
    connected: bool = False
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "connected": self.connected,
            "error": str(self.error) if self.error else None,
        }
