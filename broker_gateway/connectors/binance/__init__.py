"""
Binance Connector.

Binance USD-M Futures over the signed REST API.
"""

from ..registry import ConnectorRegistry
from .client import BinanceAPIError, BinanceFuturesClient, MAINNET_URL, TESTNET_URL
from .connector import BinanceBroker
from .errors import BINANCE_ERROR_MAP, classify_exception, map_binance_error


def register(registry: ConnectorRegistry) -> None:
    """Register the binance connector factory."""
    registry.register("binance", BinanceBroker)


__all__ = [
    "BinanceBroker",
    "BinanceFuturesClient",
    "BinanceAPIError",
    "BINANCE_ERROR_MAP",
    "MAINNET_URL",
    "TESTNET_URL",
    "classify_exception",
    "map_binance_error",
    "register",
]
