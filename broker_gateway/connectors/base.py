"""
Broker Gateway - Connector Base.

============================================================
PURPOSE
============================================================
Capability contract every exchange connector implements.

DESIGN PRINCIPLES:
- Exchange-agnostic interface
- Futures position management is an optional extension,
  discovered through Broker.as_futures() instead of casts
- Every data or mutating call raises NotConnectedError
  before a successful initialize()

============================================================
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..types import (
    AccountInfo,
    Balance,
    Credentials,
    LeverageRequest,
    MarginTypeRequest,
    Order,
    OrderRequest,
    Position,
    PositionSide,
    SymbolInfo,
)


# ============================================================
# FUTURES EXTENSION
# ============================================================

class FuturesCapability(ABC):
    """
    Futures-specific position management.

    Connectors that support it return themselves (or a helper)
    from Broker.as_futures().
    """

    @abstractmethod
    async def close_position(self, symbol: str, position_side: PositionSide) -> None:
        """Close one position with a reduce-only market order."""
        pass

    @abstractmethod
    async def close_all_positions(self) -> None:
        """Close every open position."""
        pass

    @abstractmethod
    async def set_position_mode(self, dual_side_position: bool) -> None:
        """Switch between hedge (dual side) and one-way mode."""
        pass

    @abstractmethod
    async def get_position_mode(self) -> bool:
        """Return True when hedge mode is active."""
        pass


# ============================================================
# BROKER CONTRACT
# ============================================================

class Broker(ABC):
    """
    Abstract interface for exchange connectors.

    Implementations:
    - BinanceBroker: Binance USD-M Futures
    - MockBroker: In-memory, for testing
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Broker name, e.g. binance."""
        pass

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    @abstractmethod
    async def initialize(self, credentials: Optional[Credentials]) -> None:
        """
        Set up the connector and probe the exchange once.

        Either fully connected afterwards or not connected.

        Raises:
            InvalidCredentialsError: If credentials are missing
            BrokerError: If the liveness probe fails
        """
        pass

    @abstractmethod
    async def test_connection(self) -> None:
        """
        Probe the exchange.

        Raises:
            NotConnectedError: If never initialized
            BrokerError: If the probe fails
        """
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the client. Safe to call twice."""
        pass

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def get_account_info(self) -> AccountInfo:
        pass

    @abstractmethod
    async def get_balance(self, asset: str) -> Balance:
        pass

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    @abstractmethod
    async def get_positions(self) -> List[Position]:
        """All non-zero positions."""
        pass

    @abstractmethod
    async def get_position(self, symbol: str) -> Position:
        """
        Raises:
            PositionNotFoundError: If no open position exists
        """
        pass

    @abstractmethod
    async def set_leverage(self, request: LeverageRequest) -> None:
        pass

    @abstractmethod
    async def set_margin_type(self, request: MarginTypeRequest) -> None:
        pass

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> Order:
        pass

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> Order:
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        pass

    @abstractmethod
    async def get_open_orders(self, symbol: str = "") -> List[Order]:
        pass

    @abstractmethod
    async def get_order_history(self, symbol: str, limit: int = 0) -> List[Order]:
        pass

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    @abstractmethod
    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        pass

    @abstractmethod
    async def get_exchange_info(self) -> List[SymbolInfo]:
        pass

    # --------------------------------------------------------
    # CAPABILITIES
    # --------------------------------------------------------

    def as_futures(self) -> Optional[FuturesCapability]:
        """
        Futures extension, or None when unsupported.

        Callers treat None as "feature unsupported", not as a
        failure of the base contract.
        """
        if isinstance(self, FuturesCapability):
            return self
        return None
