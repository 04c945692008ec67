"""
Error Taxonomy Tests.

Tests for sentinel matching through wrappers and retry
classification.
"""

import pytest

from broker_gateway import (
    AggregateBrokerError,
    APIError,
    BrokerError,
    InsufficientBalanceError,
    InvalidCredentialsError,
    NetworkError,
    OrderNotFoundError,
    RateLimitExceededError,
    RequestTimeoutError,
    is_error,
    is_retryable,
    is_temporary_error,
)


# ============================================================
# BROKER ERROR
# ============================================================

class TestBrokerError:
    """Tests for the structured broker error."""

    def test_message_without_cause(self):
        err = BrokerError("binance", "ORDER_FAILED", "failed to place order")

        assert str(err) == "[binance] ORDER_FAILED: failed to place order"
        assert err.cause is None

    def test_message_with_cause(self):
        err = BrokerError("binance", "ORDER_FAILED", "failed to place order", NetworkError())

        assert str(err) == "[binance] ORDER_FAILED: failed to place order (network error)"
        assert isinstance(err.cause, NetworkError)
        assert err.__cause__ is err.cause

    def test_fields(self):
        err = BrokerError("okx", "RATE_LIMIT", "slow down")

        assert err.broker == "okx"
        assert err.code == "RATE_LIMIT"
        assert err.message == "slow down"


# ============================================================
# SENTINEL MATCHING
# ============================================================

class TestIsError:
    """Tests for is_error through the cause chain."""

    def test_direct_match(self):
        assert is_error(OrderNotFoundError(), OrderNotFoundError)

    def test_match_through_broker_error(self):
        err = BrokerError("binance", "ORDER_NOT_FOUND", "missing", OrderNotFoundError())

        assert is_error(err, OrderNotFoundError)
        assert not is_error(err, InsufficientBalanceError)

    def test_match_through_nested_raise_from(self):
        """Test sentinels survive several layers of wrapping."""
        try:
            try:
                raise InvalidCredentialsError()
            except InvalidCredentialsError as inner:
                raise BrokerError("binance", "INVALID_CREDENTIALS", "auth failed", inner)
        except BrokerError as middle:
            outer = RuntimeError("initialization failed")
            outer.__cause__ = middle

        assert is_error(outer, InvalidCredentialsError)
        assert is_error(outer, BrokerError)

    def test_none_is_never_an_error(self):
        assert not is_error(None, APIError)


# ============================================================
# RETRY CLASSIFICATION
# ============================================================

class TestIsRetryable:
    """Tests for is_retryable."""

    @pytest.mark.parametrize("err", [
        RateLimitExceededError(),
        NetworkError(),
        RequestTimeoutError(),
    ])
    def test_temporary_sentinels(self, err):
        assert is_retryable(err)
        assert is_temporary_error(err)

    @pytest.mark.parametrize("code", ["RATE_LIMIT", "NETWORK_ERROR", "TIMEOUT", "SERVER_ERROR"])
    def test_retryable_codes(self, code):
        assert is_retryable(BrokerError("binance", code, "transient"))

    @pytest.mark.parametrize("code", ["ORDER_FAILED", "INSUFFICIENT_BALANCE", "INVALID_SYMBOL"])
    def test_non_retryable_codes(self, code):
        assert not is_retryable(BrokerError("binance", code, "rejected"))

    def test_wrapped_sentinel_is_retryable(self):
        err = BrokerError("binance", "ORDER_FAILED", "failed", NetworkError())

        assert is_retryable(err)

    def test_validation_errors_are_not_retryable(self):
        assert not is_retryable(InsufficientBalanceError())
        assert not is_retryable(ValueError("bad"))
        assert not is_retryable(None)


# ============================================================
# AGGREGATE ERROR
# ============================================================

class TestAggregateBrokerError:
    """Tests for multi-broker error aggregation."""

    def test_message_lists_brokers_sorted(self):
        err = AggregateBrokerError("errors closing brokers", {
            "okx": NetworkError(),
            "binance": APIError(),
        })

        assert str(err) == "errors closing brokers: binance: API error; okx: network error"
        assert set(err.errors) == {"binance", "okx"}

    def test_empty(self):
        err = AggregateBrokerError("nothing", {})

        assert str(err) == "nothing"
        assert err.errors == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
