"""
Broker Gateway - Configuration Manager.

============================================================
RESPONSIBILITY
============================================================
Drives broker lifecycle from declarative configuration.

- Validate the configuration tree
- Initialize every enabled broker (partial success allowed)
- Apply position mode, leverage and margin type (best effort)
- Reconnect a single broker from its stored configuration
- Run operations under per-broker retry settings
- Report per-broker health

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, TypeVar

from .config import (
    VALID_MARGIN_TYPES,
    VALID_POSITION_MODES,
    BrokerConfig,
    GatewayConfig,
    RetryConfig,
)
from .connectors.base import Broker
from .connectors.registry import ConnectorRegistry
from .errors import BrokerNotFoundError, ConfigurationError, RequestTimeoutError
from .manager import BrokerManager, BrokerOperation
from .types import BrokerHealth, Credentials, LeverageRequest, MarginType, MarginTypeRequest
from .utils import MAX_LEVERAGE


logger = logging.getLogger(__name__)

T = TypeVar("T")


DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

MARGIN_TYPES = {
    "isolated": MarginType.ISOLATED,
    "cross": MarginType.CROSSED,
}


class ConfigManager:
    """
    Manages broker configuration and initialization.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig],
        registry: ConnectorRegistry,
        manager: Optional[BrokerManager] = None,
    ):
        """
        Initialize configuration manager.

        Args:
            config: Decoded gateway configuration
            registry: Connector factories
            manager: Existing manager, created from registry if None
        """
        self._config = config
        self._manager = manager or BrokerManager(
            registry,
            timeouts=config.timeouts if config else None,
            retry=config.retry if config else None,
        )

    @property
    def manager(self) -> BrokerManager:
        return self._manager

    @property
    def config(self) -> Optional[GatewayConfig]:
        return self._config

    # ========================================================
    # VALIDATION
    # ========================================================

    @staticmethod
    def _validate_credentials(credentials: Credentials) -> None:
        if not credentials.api_key:
            raise ConfigurationError("API key is required")
        if not credentials.secret_key:
            raise ConfigurationError("secret key is required")

    def validate_config(self) -> None:
        """
        Validate the configuration tree.

        Raises:
            ConfigurationError: On the first invalid broker
        """
        if self._config is None:
            raise ConfigurationError("configuration is nil")

        if not self._config.brokers:
            raise ConfigurationError("no brokers configured")

        for name, broker_config in sorted(self._config.brokers.items()):
            if not broker_config.enabled:
                continue

            settings = broker_config.settings
            try:
                self._validate_credentials(broker_config.credentials)
            except ConfigurationError as e:
                raise ConfigurationError(f"invalid credentials for broker {name}: {e}") from e

            if settings.leverage < 0 or settings.leverage > MAX_LEVERAGE:
                raise ConfigurationError(
                    f"invalid leverage for broker {name}: must be between 1 and {MAX_LEVERAGE}"
                )

            if settings.margin_type and settings.margin_type not in VALID_MARGIN_TYPES:
                raise ConfigurationError(
                    f"invalid margin type for broker {name}: must be 'isolated' or 'cross'"
                )

            if settings.position_mode and settings.position_mode not in VALID_POSITION_MODES:
                raise ConfigurationError(
                    f"invalid position mode for broker {name}: must be 'hedge' or 'one-way'"
                )

    # ========================================================
    # INITIALIZATION
    # ========================================================

    async def initialize_brokers(self) -> Dict[str, BaseException]:
        """
        Initialize every enabled broker.

        Keeps going past individual failures.

        Returns:
            Broker name -> error, for brokers that failed

        Raises:
            ConfigurationError: If there is no configuration
        """
        if self._config is None:
            raise ConfigurationError("configuration is nil")

        errors: Dict[str, BaseException] = {}

        for name, broker_config in sorted(self._config.brokers.items()):
            if not broker_config.enabled:
                logger.info(f"Skipping disabled broker: {name}")
                continue

            logger.info(f"Initializing broker: {name}")
            try:
                await self._initialize_broker(name, broker_config)
            except Exception as e:
                logger.error(f"Failed to initialize broker {name}: {e}")
                errors[name] = e
                continue

            logger.info(f"Successfully initialized broker: {name}")

        if errors:
            enabled = len(self.get_enabled_brokers())
            logger.warning(f"Initialized {enabled - len(errors)} of {enabled} enabled brokers")

        return errors

    async def _initialize_broker(self, name: str, broker_config: BrokerConfig) -> None:
        self._validate_credentials(broker_config.credentials)

        options: Dict[str, Any] = {"testnet": broker_config.settings.test_mode}
        if broker_config.settings.rate_limit_delay > 0:
            options["rate_limit_delay"] = broker_config.settings.rate_limit_delay

        timeout = self._request_timeout(broker_config)
        try:
            broker = await asyncio.wait_for(
                self._manager.initialize_broker(name, broker_config.credentials, **options),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"request timeout: initializing {name} exceeded {timeout}s") from e

        await self._apply_broker_settings(broker, broker_config)

    def _request_timeout(self, broker_config: BrokerConfig) -> float:
        if broker_config.settings.request_timeout > 0:
            return broker_config.settings.request_timeout
        if self._config.default.request_timeout > 0:
            return self._config.default.request_timeout
        return DEFAULT_REQUEST_TIMEOUT_SECONDS

    async def _apply_broker_settings(self, broker: Broker, broker_config: BrokerConfig) -> None:
        """Best effort: failures are logged, never raised."""
        settings = broker_config.settings
        default = self._config.default

        position_mode = settings.position_mode or default.position_mode
        futures = broker.as_futures()
        if position_mode and futures is not None:
            try:
                await futures.set_position_mode(position_mode == "hedge")
                logger.info(f"Set position mode for {broker.name}: {position_mode}")
            except Exception as e:
                logger.warning(f"Failed to set position mode for {broker.name}: {e}")

        leverage = settings.leverage or default.leverage
        margin_type = MARGIN_TYPES.get(settings.margin_type or default.margin_type)

        for symbol in settings.symbols:
            if leverage > 0:
                try:
                    await broker.set_leverage(LeverageRequest(symbol=symbol, leverage=leverage))
                except Exception as e:
                    logger.warning(f"Failed to set leverage for {broker.name} {symbol}: {e}")

            if margin_type is not None:
                try:
                    await broker.set_margin_type(MarginTypeRequest(symbol=symbol, margin_type=margin_type))
                except Exception as e:
                    logger.warning(f"Failed to set margin type for {broker.name} {symbol}: {e}")

    async def reconnect_broker(self, name: str) -> None:
        """
        Tear down and reinitialize one broker.

        Raises:
            BrokerNotFoundError: If name is not configured
            ConfigurationError: If the broker is disabled
        """
        broker_config = self.get_broker_config(name)

        if not broker_config.enabled:
            raise ConfigurationError(f"broker {name} is disabled")

        try:
            await self._manager.remove_broker(name)
        except Exception as e:
            logger.warning(f"Failed to remove existing broker {name}: {e}")

        await self._initialize_broker(name, broker_config)
        logger.info(f"Reconnected broker: {name}")

    # ========================================================
    # CONFIGURATION ACCESS
    # ========================================================

    def get_broker_config(self, name: str) -> BrokerConfig:
        """
        Raises:
            BrokerNotFoundError: If name is not configured
        """
        if self._config is None or name not in self._config.brokers:
            raise BrokerNotFoundError(f"broker {name} not found in configuration")
        return self._config.brokers[name]

    def update_broker_config(self, name: str, broker_config: BrokerConfig) -> None:
        """Replace a broker's configuration. Takes effect on reconnect."""
        if self._config is None:
            self._config = GatewayConfig()
        self._config.brokers[name] = broker_config
        logger.info(f"Updated configuration for broker: {name}")

    def get_enabled_brokers(self) -> List[str]:
        if self._config is None:
            return []
        return sorted(name for name, c in self._config.brokers.items() if c.enabled)

    def get_retry_config(self, name: str) -> RetryConfig:
        """
        Retry policy for one broker.

        Broker settings win over DefaultConfig, which wins over
        the gateway-wide RetryConfig.

        Raises:
            BrokerNotFoundError: If name is not configured
        """
        settings = self.get_broker_config(name).settings
        default = self._config.default
        base = self._config.retry
        return RetryConfig(
            max_retries=settings.retry_attempts or default.retry_attempts or base.max_retries,
            base_delay_seconds=settings.retry_delay or default.retry_delay or base.base_delay_seconds,
            max_delay_seconds=base.max_delay_seconds,
        )

    # ========================================================
    # EXECUTION
    # ========================================================

    async def execute_with_retry(self, name: str, operation: BrokerOperation) -> T:
        """
        Run an operation on one broker under its configured retry policy.

        Raises:
            BrokerNotFoundError: If name is not configured or not initialized
            The last error raised by operation
        """
        retry = self.get_retry_config(name)
        return await self._manager.retry_operation(
            lambda: self._manager.execute_on_broker(name, operation),
            max_retries=retry.max_retries,
            base_delay_seconds=retry.base_delay_seconds,
        )

    # ========================================================
    # HEALTH
    # ========================================================

    async def test_all_connections(self) -> Dict[str, BaseException]:
        return await self._manager.test_connections()

    async def get_health_status(self) -> Dict[str, BrokerHealth]:
        """
        Health of every configured broker.

        Brokers that were never initialized report a
        BrokerNotFoundError.
        """
        results: Dict[str, BrokerHealth] = {}
        if self._config is None:
            return results

        for name in sorted(self._config.brokers):
            health = BrokerHealth(name=name)

            try:
                broker = await self._manager.get_broker(name)
            except BrokerNotFoundError as e:
                health.error = e
                results[name] = health
                continue

            health.connected = broker.is_connected()
            if health.connected:
                try:
                    await broker.test_connection()
                except Exception as e:
                    health.connected = False
                    health.error = e

            results[name] = health

        return results

    async def close(self) -> None:
        await self._manager.close()
