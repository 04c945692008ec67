"""
Connector Registry.

============================================================
PURPOSE
============================================================
Name -> factory mapping for exchange connectors.

The registry is an explicit object built once at process start
and handed to the BrokerManager. Each connector module exposes
a register(registry) bootstrap function.

============================================================
USAGE
============================================================
```python
registry = create_default_registry()
broker = registry.create("binance", testnet=True)

# Custom connector
registry.register("myexchange", MyExchangeBroker)
```

============================================================
"""

import logging
from typing import Any, Callable, Dict, List

from ..errors import BrokerNotFoundError
from .base import Broker


logger = logging.getLogger(__name__)


BrokerFactory = Callable[..., Broker]


class ConnectorRegistry:
    """
    Registry of connector factories.

    Factories accept keyword options (testnet, timeouts) and
    return a fresh, unconnected Broker.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, BrokerFactory] = {}

    def register(self, name: str, factory: BrokerFactory) -> None:
        """
        Register a connector factory.

        Re-registering a name replaces the previous factory.
        """
        name = name.lower()
        if name in self._factories:
            logger.warning(f"Replacing connector factory for {name}")
        self._factories[name] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(name.lower(), None)

    def create(self, name: str, **options: Any) -> Broker:
        """
        Create a connector instance by name.

        Args:
            name: Exchange name, e.g. binance
            **options: Passed to the factory

        Returns:
            New, unconnected Broker

        Raises:
            BrokerNotFoundError: If nothing is registered under name
        """
        factory = self._factories.get(name.lower())
        if factory is None:
            raise BrokerNotFoundError(f"broker not found: {name}")
        return factory(**options)

    def names(self) -> List[str]:
        """Registered connector names, sorted."""
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._factories


def create_default_registry() -> ConnectorRegistry:
    """
    Build a registry with the built-in connectors.

    Returns:
        ConnectorRegistry with binance and mock registered
    """
    from . import binance, mock

    registry = ConnectorRegistry()
    binance.register(registry)
    mock.register(registry)
    return registry
