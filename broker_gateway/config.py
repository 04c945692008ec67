"""
Broker Gateway - Configuration.

============================================================
PURPOSE
============================================================
All configuration for connectors, the broker manager and the
signal processor.

CRITICAL CONSTRAINTS:
- No blind retries
- Bounded fan-out
- Explicit deadlines on every exchange call

The configuration tree is produced by an external loader.
This module only models and decodes it.

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Any, List, Optional

from .types import Credentials


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """
    Deadlines for connector calls.
    """

    connect_timeout_seconds: float = 10.0
    """Connection and initialization probes."""

    order_timeout_seconds: float = 30.0
    """Order submission and cancellation."""

    query_timeout_seconds: float = 30.0
    """Order status queries."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TimeoutConfig":
        data = data or {}
        return cls(
            connect_timeout_seconds=float(data.get("connect_timeout_seconds", 10.0)),
            order_timeout_seconds=float(data.get("order_timeout_seconds", 30.0)),
            query_timeout_seconds=float(data.get("query_timeout_seconds", 30.0)),
        )


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration.

    SAFETY: Limited retries with exponential backoff.
    """

    max_retries: int = 3
    """Maximum number of retry attempts after the first call."""

    base_delay_seconds: float = 1.0
    """Delay before the first retry. Doubles each attempt."""

    max_delay_seconds: float = 60.0
    """Upper bound on a single delay."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryConfig":
        data = data or {}
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            base_delay_seconds=float(data.get("base_delay_seconds", 1.0)),
            max_delay_seconds=float(data.get("max_delay_seconds", 60.0)),
        )


# ============================================================
# SIGNAL PROCESSOR CONFIGURATION
# ============================================================

@dataclass
class SignalProcessorConfig:
    """
    Signal processing configuration.
    """

    max_concurrency: int = 10
    """Maximum signals processed at once in a batch."""

    order_retries: int = 1
    """Retries for a single order. 1 means at most two submissions."""

    retry_base_delay_seconds: float = 1.0
    """Backoff base between submission attempts."""

    order_timeout_seconds: float = 30.0
    """Deadline for each submission attempt."""

    query_timeout_seconds: float = 30.0
    """Deadline for order status queries."""

    quantity_precision: int = 8
    """Decimal places used when formatting order quantities."""

    position_drift_tolerance: Decimal = Decimal("0.0001")
    """Allowed gap between known and signalled previous size."""

    verify_previous_position: bool = False
    """Query the exchange position before ordering and warn on drift."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SignalProcessorConfig":
        data = data or {}
        defaults = cls()
        return cls(
            max_concurrency=int(data.get("max_concurrency", defaults.max_concurrency)),
            order_retries=int(data.get("order_retries", defaults.order_retries)),
            retry_base_delay_seconds=float(
                data.get("retry_base_delay_seconds", defaults.retry_base_delay_seconds)
            ),
            order_timeout_seconds=float(data.get("order_timeout_seconds", defaults.order_timeout_seconds)),
            query_timeout_seconds=float(data.get("query_timeout_seconds", defaults.query_timeout_seconds)),
            quantity_precision=int(data.get("quantity_precision", defaults.quantity_precision)),
            position_drift_tolerance=Decimal(
                str(data.get("position_drift_tolerance", defaults.position_drift_tolerance))
            ),
            verify_previous_position=bool(
                data.get("verify_previous_position", defaults.verify_previous_position)
            ),
        )


# ============================================================
# BROKER CONFIGURATION
# ============================================================

VALID_MARGIN_TYPES = {"isolated", "cross"}
VALID_POSITION_MODES = {"hedge", "one-way"}


@dataclass
class BrokerSettings:
    """
    Per-broker settings.

    Zero values mean "fall back to DefaultConfig".
    """

    leverage: int = 0
    margin_type: str = ""
    position_mode: str = ""  # hedge or one-way
    test_mode: bool = False
    """Use the exchange sandbox/testnet endpoint."""

    retry_attempts: int = 0
    retry_delay: float = 0.0
    request_timeout: float = 0.0
    rate_limit_delay: float = 0.0
    symbols: List[str] = field(default_factory=list)
    """Symbols that receive leverage and margin settings after init."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BrokerSettings":
        data = data or {}
        return cls(
            leverage=int(data.get("leverage") or 0),
            margin_type=str(data.get("margin_type") or ""),
            position_mode=str(data.get("position_mode") or ""),
            test_mode=bool(data.get("test_mode", False)),
            retry_attempts=int(data.get("retry_attempts") or 0),
            retry_delay=float(data.get("retry_delay") or 0.0),
            request_timeout=float(data.get("request_timeout") or 0.0),
            rate_limit_delay=float(data.get("rate_limit_delay") or 0.0),
            symbols=list(data.get("symbols") or []),
        )


@dataclass
class BrokerConfig:
    """Configuration for one named broker."""

    enabled: bool = False
    credentials: Credentials = field(default_factory=Credentials)
    settings: BrokerSettings = field(default_factory=BrokerSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BrokerConfig":
        data = data or {}
        creds = data.get("credentials") or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            credentials=Credentials(
                api_key=str(creds.get("api_key") or ""),
                secret_key=str(creds.get("secret_key") or ""),
                passphrase=str(creds.get("passphrase") or ""),
            ),
            settings=BrokerSettings.from_dict(data.get("settings")),
        )


@dataclass
class DefaultConfig:
    """Defaults applied when a broker leaves a setting unset."""

    leverage: int = 0
    margin_type: str = ""
    position_mode: str = ""
    retry_attempts: int = 0
    retry_delay: float = 0.0
    request_timeout: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DefaultConfig":
        data = data or {}
        return cls(
            leverage=int(data.get("leverage") or 0),
            margin_type=str(data.get("margin_type") or ""),
            position_mode=str(data.get("position_mode") or ""),
            retry_attempts=int(data.get("retry_attempts") or 0),
            retry_delay=float(data.get("retry_delay") or 0.0),
            request_timeout=float(data.get("request_timeout") or 0.0),
        )


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class GatewayConfig:
    """
    Complete broker gateway configuration.
    """

    brokers: Dict[str, BrokerConfig] = field(default_factory=dict)
    default: DefaultConfig = field(default_factory=DefaultConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    signals: SignalProcessorConfig = field(default_factory=SignalProcessorConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        """
        Decode an already-parsed configuration mapping.

        Durations are expressed in seconds.

        Args:
            data: Mapping with "brokers" and "default" sections

        Returns:
            GatewayConfig
        """
        brokers = {
            name.lower(): BrokerConfig.from_dict(section)
            for name, section in (data.get("brokers") or {}).items()
        }
        return cls(
            brokers=brokers,
            default=DefaultConfig.from_dict(data.get("default")),
            timeouts=TimeoutConfig.from_dict(data.get("timeouts")),
            retry=RetryConfig.from_dict(data.get("retry")),
            signals=SignalProcessorConfig.from_dict(data.get("signals")),
        )
