"""
Broker Gateway - Broker Manager.

============================================================
RESPONSIBILITY
============================================================
Owns the named collection of live broker connections.

- Create and initialize brokers through the ConnectorRegistry
- Single-broker and all-broker execution primitives
- Position / account aggregation across brokers
- Connection tests and health checks

============================================================
LOCKING
============================================================
The broker map is guarded by a ReadWriteLock.

- Reads (get_broker, get_brokers, fan-out) snapshot the map
  under the shared lock and release it before any network call
- Mutations (add_broker, remove_broker, close) take the
  exclusive lock

Aggregate operations run sequentially in the calling task and
never let one broker's failure stop the others.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from .config import RetryConfig, TimeoutConfig
from .connectors.base import Broker
from .connectors.registry import ConnectorRegistry
from .errors import (
    AggregateBrokerError,
    BrokerNotFoundError,
    InvalidLeverageError,
    NotConnectedError,
    UnsupportedOperationError,
)
from .locks import ReadWriteLock
from .types import AccountInfo, Credentials, LeverageRequest, Order, OrderRequest, Position
from .utils import is_valid_leverage, retry_with_backoff


logger = logging.getLogger(__name__)

T = TypeVar("T")

BrokerOperation = Callable[[Broker], Awaitable[T]]


# ============================================================
# AGGREGATE RESULT
# ============================================================

@dataclass
class AggregateResult(Generic[T]):
    """
    Outcome of an operation run on every broker.

    Partial failure is a normal outcome: each broker lands in
    exactly one of the two maps.
    """

    results: Dict[str, T] = field(default_factory=dict)
    """Broker name -> value for brokers that succeeded."""

    errors: Dict[str, BaseException] = field(default_factory=dict)
    """Broker name -> error for brokers that failed."""

    @property
    def ok(self) -> bool:
        return not self.errors


# ============================================================
# BROKER MANAGER
# ============================================================

class BrokerManager:
    """
    Manages multiple broker connections.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        timeouts: Optional[TimeoutConfig] = None,
        retry: Optional[RetryConfig] = None,
    ):
        """
        Initialize manager.

        Args:
            registry: Connector factories by exchange name
            timeouts: Deadlines handed to created connectors
            retry: Backoff settings for retry_operation
        """
        self._registry = registry
        self._timeouts = timeouts or TimeoutConfig()
        self._retry = retry or RetryConfig()
        self._brokers: Dict[str, Broker] = {}
        self._lock = ReadWriteLock()

    @property
    def registry(self) -> ConnectorRegistry:
        return self._registry

    # --------------------------------------------------------
    # REGISTRY MUTATION
    # --------------------------------------------------------

    async def add_broker(self, broker: Optional[Broker]) -> None:
        """
        Add a broker to the collection.

        Raises:
            ValueError: If broker is None or the name is taken
        """
        if broker is None:
            raise ValueError("broker cannot be nil")

        name = broker.name
        async with self._lock.write():
            if name in self._brokers:
                raise ValueError(f"broker {name} already exists")
            self._brokers[name] = broker

        logger.info(f"Added broker: {name}")

    async def remove_broker(self, name: str) -> None:
        """
        Remove a broker and close it.

        Raises:
            BrokerNotFoundError: If no broker has that name
        """
        async with self._lock.write():
            broker = self._brokers.pop(name, None)

        if broker is None:
            raise BrokerNotFoundError(f"broker not found: {name}")

        await broker.close()
        logger.info(f"Removed broker: {name}")

    async def get_broker(self, name: str) -> Broker:
        """
        Raises:
            BrokerNotFoundError: If no broker has that name
        """
        async with self._lock.read():
            broker = self._brokers.get(name)

        if broker is None:
            raise BrokerNotFoundError(f"broker not found: {name}")
        return broker

    async def get_brokers(self) -> Dict[str, Broker]:
        """Snapshot of all managed brokers."""
        async with self._lock.read():
            return dict(self._brokers)

    async def initialize_broker(
        self,
        name: str,
        credentials: Optional[Credentials],
        **options: Any,
    ) -> Broker:
        """
        Create, initialize and add a broker.

        The broker joins the collection only after a successful
        initialize. If adding fails, the connected broker is
        closed again.

        Args:
            name: Registered connector name
            credentials: API credentials
            **options: Connector options (testnet, ...)

        Returns:
            The connected broker

        Raises:
            BrokerNotFoundError: If no connector is registered
            InvalidCredentialsError, BrokerError: From initialize
        """
        options.setdefault("timeouts", self._timeouts)
        broker = self._registry.create(name, **options)

        await broker.initialize(credentials)

        try:
            await self.add_broker(broker)
        except BaseException:
            # Includes cancellation while waiting for the write lock
            await asyncio.shield(broker.close())
            raise

        logger.info(f"Initialized broker: {broker.name}")
        return broker

    # --------------------------------------------------------
    # EXECUTION PRIMITIVES
    # --------------------------------------------------------

    async def execute_on_broker(self, name: str, operation: BrokerOperation) -> T:
        """
        Run an operation on one connected broker.

        Raises:
            BrokerNotFoundError: If no broker has that name
            NotConnectedError: If the broker is not live
        """
        broker = await self.get_broker(name)

        if not broker.is_connected():
            raise NotConnectedError(f"broker not connected: {name}")

        return await operation(broker)

    async def execute_on_all_brokers(self, operation: BrokerOperation) -> AggregateResult:
        """
        Run an operation on every broker, one after another.

        A disconnected broker becomes a NotConnectedError entry;
        the remaining brokers still run.

        Returns:
            AggregateResult with per-name results and errors
        """
        outcome: AggregateResult = AggregateResult()

        for name, broker in sorted((await self.get_brokers()).items()):
            if not broker.is_connected():
                outcome.errors[name] = NotConnectedError(f"broker not connected: {name}")
                continue

            try:
                outcome.results[name] = await operation(broker)
            except Exception as e:
                logger.error(f"Operation failed on {name}: {e}")
                outcome.errors[name] = e

        return outcome

    async def retry_operation(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
    ) -> T:
        """
        Retry an operation with exponential backoff.

        Args:
            operation: Zero-argument coroutine factory
            max_retries: Retries after the first call, RetryConfig default if None
            base_delay_seconds: First backoff delay, RetryConfig default if None
        """
        return await retry_with_backoff(
            operation,
            self._retry.max_retries if max_retries is None else max_retries,
            self._retry.base_delay_seconds if base_delay_seconds is None else base_delay_seconds,
            self._retry.max_delay_seconds,
        )

    # --------------------------------------------------------
    # CONNECTIVITY
    # --------------------------------------------------------

    async def test_connections(self) -> Dict[str, BaseException]:
        """
        Probe every broker.

        Returns:
            Broker name -> error, for failing brokers only
        """
        errors: Dict[str, BaseException] = {}

        for name, broker in sorted((await self.get_brokers()).items()):
            if not broker.is_connected():
                errors[name] = NotConnectedError(f"broker not connected: {name}")
                continue

            try:
                await broker.test_connection()
            except Exception as e:
                logger.warning(f"Connection test failed for {name}: {e}")
                errors[name] = e

        return errors

    async def health_check(self) -> Dict[str, bool]:
        """Broker name -> connected and responding."""
        health: Dict[str, bool] = {}
        errors = await self.test_connections()

        for name in await self.get_brokers():
            health[name] = name not in errors

        return health

    async def get_connected_brokers(self) -> List[str]:
        brokers = await self.get_brokers()
        return sorted(name for name, broker in brokers.items() if broker.is_connected())

    # --------------------------------------------------------
    # SINGLE BROKER HELPERS
    # --------------------------------------------------------

    async def place_order_on_broker(self, name: str, request: OrderRequest) -> Order:
        return await self.execute_on_broker(name, lambda b: b.place_order(request))

    async def get_positions_from_broker(self, name: str) -> List[Position]:
        return await self.execute_on_broker(name, lambda b: b.get_positions())

    async def get_account_info_from_broker(self, name: str) -> AccountInfo:
        return await self.execute_on_broker(name, lambda b: b.get_account_info())

    async def set_leverage_on_broker(self, name: str, symbol: str, leverage: int) -> None:
        request = LeverageRequest(symbol=symbol, leverage=leverage)
        await self.execute_on_broker(name, lambda b: b.set_leverage(request))

    # --------------------------------------------------------
    # AGGREGATES
    # --------------------------------------------------------

    async def get_all_positions(self) -> AggregateResult:
        """Positions from every broker. results: name -> List[Position]."""
        return await self.execute_on_all_brokers(lambda b: b.get_positions())

    async def get_all_account_info(self) -> AggregateResult:
        """Account snapshots from every broker. results: name -> AccountInfo."""
        return await self.execute_on_all_brokers(lambda b: b.get_account_info())

    async def close_all_positions(self) -> AggregateResult:
        """
        Close every position on every futures-capable broker.

        Brokers without the futures extension report
        UnsupportedOperationError.
        """
        async def close_positions(broker: Broker) -> None:
            futures = broker.as_futures()
            if futures is None:
                raise UnsupportedOperationError(
                    f"broker {broker.name} does not support futures position management"
                )
            await futures.close_all_positions()

        return await self.execute_on_all_brokers(close_positions)

    async def set_leverage_on_all_brokers(self, symbol: str, leverage: int) -> AggregateResult:
        """
        Raises:
            InvalidLeverageError: If leverage is outside 1..125
        """
        if not is_valid_leverage(leverage):
            raise InvalidLeverageError(f"invalid leverage: {leverage}")

        request = LeverageRequest(symbol=symbol, leverage=leverage)
        return await self.execute_on_all_brokers(lambda b: b.set_leverage(request))

    # --------------------------------------------------------
    # SHUTDOWN
    # --------------------------------------------------------

    async def close(self) -> None:
        """
        Close every broker and clear the collection.

        Raises:
            AggregateBrokerError: If any broker failed to close
        """
        async with self._lock.write():
            brokers, self._brokers = self._brokers, {}

        errors: Dict[str, BaseException] = {}
        for name, broker in sorted(brokers.items()):
            try:
                await broker.close()
            except Exception as e:
                logger.error(f"Failed to close broker {name}: {e}")
                errors[name] = e

        logger.info(f"Closed {len(brokers)} brokers")

        if errors:
            raise AggregateBrokerError("errors closing brokers", errors)
