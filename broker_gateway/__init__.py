"""
Broker Gateway Package.

============================================================
PURPOSE
============================================================
Turns position-change trading signals into orders on one or
more crypto derivatives exchanges.

CRITICAL PRINCIPLE:
    "Signals carry target positions, never order quantities."
    "The order is always the delta from the previous position."

AUTHORITY BOUNDARIES:
    CAN:
        - Submit, query and cancel orders
        - Set leverage, margin type and position mode
        - Aggregate positions and balances across brokers
        - Retry transient failures (bounded)

    MUST NOT:
        - Persist signals, orders or secrets
        - Parse raw configuration files
        - Send user notifications

============================================================
MODULES
============================================================
- types: Orders, positions, accounts, signals
- errors: Error taxonomy and retry classification
- config: Gateway, broker and processor configuration
- utils: Parsing, formatting, validation, backoff
- calculator: Target position -> order request
- connectors: Broker contract, registry, Binance, Mock
- manager: Live broker collection and fan-out
- signal_processor: Signal -> order execution
- config_manager: Configuration-driven lifecycle

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderType,
    PositionSide,
    MarginType,
    PositionMode,
    OrderStatus,
    # Dataclasses
    Credentials,
    OrderRequest,
    Order,
    Position,
    Balance,
    AccountInfo,
    SymbolInfo,
    LeverageRequest,
    MarginTypeRequest,
    TradingSignal,
    BrokerHealth,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    BrokerGatewayError,
    BrokerNotFoundError,
    InvalidCredentialsError,
    NotConnectedError,
    InvalidSymbolError,
    InvalidOrderTypeError,
    InvalidOrderSideError,
    InvalidQuantityError,
    InvalidPriceError,
    InsufficientBalanceError,
    OrderNotFoundError,
    PositionNotFoundError,
    MarketClosedError,
    RateLimitExceededError,
    APIError,
    NetworkError,
    RequestTimeoutError,
    InvalidLeverageError,
    InvalidMarginTypeError,
    NoPositionChangeError,
    SignalValidationError,
    UnsupportedOperationError,
    ConfigurationError,
    AggregateBrokerError,
    BrokerError,
    is_error,
    is_temporary_error,
    is_retryable,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    TimeoutConfig,
    RetryConfig,
    SignalProcessorConfig,
    BrokerSettings,
    BrokerConfig,
    DefaultConfig,
    GatewayConfig,
)

# ============================================================
# UTILITIES
# ============================================================
from .utils import (
    format_symbol,
    normalize_symbol,
    parse_quantity,
    parse_price,
    format_quantity,
    format_price,
    validate_order_request,
    is_valid_leverage,
    convert_order_side_to_position_side,
    get_opposite_order_side,
    get_opposite_position_side,
    RequestPacer,
    backoff_delay,
    retry_with_backoff,
)
from .calculator import (
    calculate_order_quantity,
    derive_position_side,
    is_reduce_only,
    build_order_request,
)

# ============================================================
# CONNECTORS
# ============================================================
from .connectors import (
    Broker,
    FuturesCapability,
    ConnectorRegistry,
    create_default_registry,
)

# ============================================================
# SERVICES
# ============================================================
from .locks import ReadWriteLock
from .manager import AggregateResult, BrokerManager
from .signal_processor import SignalOutcome, SignalProcessor, SignalResult
from .config_manager import ConfigManager


__all__ = [
    # Types
    "OrderSide",
    "OrderType",
    "PositionSide",
    "MarginType",
    "PositionMode",
    "OrderStatus",
    "Credentials",
    "OrderRequest",
    "Order",
    "Position",
    "Balance",
    "AccountInfo",
    "SymbolInfo",
    "LeverageRequest",
    "MarginTypeRequest",
    "TradingSignal",
    "BrokerHealth",
    # Errors
    "BrokerGatewayError",
    "BrokerNotFoundError",
    "InvalidCredentialsError",
    "NotConnectedError",
    "InvalidSymbolError",
    "InvalidOrderTypeError",
    "InvalidOrderSideError",
    "InvalidQuantityError",
    "InvalidPriceError",
    "InsufficientBalanceError",
    "OrderNotFoundError",
    "PositionNotFoundError",
    "MarketClosedError",
    "RateLimitExceededError",
    "APIError",
    "NetworkError",
    "RequestTimeoutError",
    "InvalidLeverageError",
    "InvalidMarginTypeError",
    "NoPositionChangeError",
    "SignalValidationError",
    "UnsupportedOperationError",
    "ConfigurationError",
    "AggregateBrokerError",
    "BrokerError",
    "is_error",
    "is_temporary_error",
    "is_retryable",
    # Config
    "TimeoutConfig",
    "RetryConfig",
    "SignalProcessorConfig",
    "BrokerSettings",
    "BrokerConfig",
    "DefaultConfig",
    "GatewayConfig",
    # Utilities
    "format_symbol",
    "normalize_symbol",
    "parse_quantity",
    "parse_price",
    "format_quantity",
    "format_price",
    "validate_order_request",
    "is_valid_leverage",
    "convert_order_side_to_position_side",
    "get_opposite_order_side",
    "get_opposite_position_side",
    "RequestPacer",
    "backoff_delay",
    "retry_with_backoff",
    "calculate_order_quantity",
    "derive_position_side",
    "is_reduce_only",
    "build_order_request",
    # Connectors
    "Broker",
    "FuturesCapability",
    "ConnectorRegistry",
    "create_default_registry",
    # Services
    "ReadWriteLock",
    "AggregateResult",
    "BrokerManager",
    "SignalOutcome",
    "SignalProcessor",
    "SignalResult",
    "ConfigManager",
]
