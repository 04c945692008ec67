"""
Broker Gateway - Exchange Connectors.

Built-in connectors:
- binance: Binance USD-M Futures
- mock: In-memory broker for tests
"""

from .base import Broker, FuturesCapability
from .registry import BrokerFactory, ConnectorRegistry, create_default_registry


__all__ = [
    "Broker",
    "FuturesCapability",
    "BrokerFactory",
    "ConnectorRegistry",
    "create_default_registry",
]
