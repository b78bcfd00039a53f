"""
Unit tests for the shared configuration, retry, error and metrics helpers.
"""

from unittest.mock import AsyncMock, MagicMock, call

import pytest

from shared.config import get_config
from shared.errors import IdentityServiceError, NotFoundError
from shared.logging import request_id_var
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig, calculate_delay, retry_async
from shared.test_helpers import test_environment


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self):
        config = get_config("ehr", 3000)

        assert config.service_name == "ehr"
        assert config.http_max_attempts == 3
        assert config.http_retry_base_delay == 1.0
        assert config.cached_get_ttl_seconds == 60

    def test_environment_overrides(self, monkeypatch):
        for name, value in test_environment.get_mock_config().items():
            monkeypatch.setenv(name, value)
        monkeypatch.setenv("EHR_CACHE_TTL_OVERRIDES", '{"users": 30}')

        config = get_config("ehr", 3000)

        assert config.env == "test"
        assert config.security_service_url == "http://security.test/api"
        assert config.cache_ttl_overrides == {"users": 30.0}

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("EHR_HTTP_MAX_ATTEMPTS", "7")

        assert get_config("ehr", 3000, http_max_attempts=2).http_max_attempts == 2


class TestRetry:
    """Test cases for the retry policy."""

    def test_linear_delays(self):
        config = RetryConfig(max_attempts=3, base_delay=1.0, backoff_strategy="linear")

        assert [calculate_delay(n, config) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_exponential_delays_are_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, backoff_strategy="exponential")

        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok"])
        sleep = AsyncMock()
        on_retry = MagicMock()

        result = await retry_async(func, exceptions=(ConnectionError,), sleep=sleep, on_retry=on_retry)

        assert result == "ok"
        sleep.assert_awaited_once_with(1.0)
        assert on_retry.call_args.args[:2] == (1, 1.0)

    @pytest.mark.asyncio
    async def test_gives_up_and_reraises_last_error(self):
        errors = [ConnectionError("one"), ConnectionError("two"), ConnectionError("three")]
        func = AsyncMock(side_effect=errors)
        sleep = AsyncMock()

        with pytest.raises(ConnectionError) as exc_info:
            await retry_async(func, exceptions=(ConnectionError,), config=RetryConfig(max_attempts=3), sleep=sleep)

        assert exc_info.value is errors[2]
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_predicate_stops_retries(self):
        func = AsyncMock(side_effect=ValueError("bad input"))
        sleep = AsyncMock()

        with pytest.raises(ValueError):
            await retry_async(func, exceptions=(Exception,), retry_if=lambda e: not isinstance(e, ValueError),
                              sleep=sleep)

        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self):
        func = AsyncMock(side_effect=KeyError("x"))

        with pytest.raises(KeyError):
            await retry_async(func, exceptions=(ConnectionError,), sleep=AsyncMock())

        assert func.await_count == 1


class TestErrors:
    """Test cases for the error taxonomy."""

    def test_error_response_carries_request_id(self):
        token = request_id_var.set("req-1")
        try:
            response = NotFoundError("Diagnostic not found", details={"id": "d1"}).to_response()
        finally:
            request_id_var.reset(token)

        assert response.request_id == "req-1"
        assert response.code == "NOT_FOUND"
        assert response.details == {"id": "d1"}

    def test_identity_errors_map_upstream_status(self):
        assert IdentityServiceError("rejected", upstream_status=409).status_code == 409
        assert IdentityServiceError("down", upstream_status=503).status_code == 502
        assert IdentityServiceError("unreachable").status_code == 502
        assert IdentityServiceError("rejected", upstream_status=409).details["upstream_status"] == 409


class TestMetrics:
    """Test cases for the metrics collector."""

    def test_collectors_are_isolated(self):
        first = MetricsCollector("ehr-a")
        second = MetricsCollector("ehr-b")

        first.record_cache_access("users", hit=True)

        assert first.registry.get_sample_value("cache_hits_total", {"namespace": "users"}) == 1.0
        assert second.registry.get_sample_value("cache_hits_total", {"namespace": "users"}) is None

    def test_zero_invalidations_are_not_counted(self):
        metrics = MetricsCollector("ehr-c")

        metrics.record_cache_invalidation("diagnostics", 0)
        metrics.record_cache_invalidation("diagnostics", 3)

        assert metrics.registry.get_sample_value(
            "cache_invalidations_total", {"namespace": "diagnostics"}) == 3.0

    def test_named_collector_is_shared(self):
        assert get_metrics_collector("ehr-shared") is get_metrics_collector("ehr-shared")

    def test_render(self):
        metrics = MetricsCollector("ehr-d")
        metrics.record_outbound_request("get", "success")

        assert b'outbound_requests_total{method="GET",outcome="success"} 1.0' in metrics.render()
