"""
Unit tests for the health poller and HTTP probes.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from certdeploy.core.cancellation import CancellationToken
from certdeploy.core.health_poller import HealthPoller, check_health_once, http_check
from certdeploy.models.health import HealthCheckPolicy, PollOutcome


def sequence_check(results):
    """Check returning the given results in order."""
    calls = {"count": 0}
    values = iter(results)

    async def check():
        calls["count"] += 1
        value = next(values)
        if isinstance(value, Exception):
            raise value
        return value

    return check, calls


class TestHealthPoller:
    """Test bounded polling."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        check, calls = sequence_check([True])
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=5)

        result = await HealthPoller().poll(check, policy)

        assert result.outcome == PollOutcome.SUCCESS
        assert result.succeeded
        assert result.attempts == 1
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_success_after_retries(self):
        check, calls = sequence_check([False, False, True])
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=5)

        result = await HealthPoller().poll(check, policy)

        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self):
        check, calls = sequence_check([False] * 30)
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=30)

        result = await HealthPoller().poll(check, policy)

        assert result.outcome == PollOutcome.TIMEOUT
        assert result.attempts == 30
        assert calls["count"] == 30
        assert result.last_error == "check returned not ready"

    @pytest.mark.asyncio
    async def test_exceptions_count_as_failed_attempts(self):
        check, _ = sequence_check([ConnectionError("refused"), True])
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=3)

        result = await HealthPoller().poll(check, policy)

        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_last_error_recorded(self):
        check, _ = sequence_check([ConnectionError("refused")] * 2)
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=2)

        result = await HealthPoller().poll(check, policy)

        assert result.outcome == PollOutcome.TIMEOUT
        assert "refused" in result.last_error

    @pytest.mark.asyncio
    async def test_sleeps_only_between_attempts(self):
        check, _ = sequence_check([False, False, False])
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=2.0, max_attempts=3)

        with patch("certdeploy.core.health_poller.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await HealthPoller().poll(check, policy)

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(2.0)

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        check, calls = sequence_check([True])
        token = CancellationToken()
        token.cancel("operator abort")
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=0, max_attempts=3)

        result = await HealthPoller().poll(check, policy, token)

        assert result.outcome == PollOutcome.CANCELLED
        assert result.attempts == 0
        assert result.last_error == "operator abort"
        assert calls["count"] == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self):
        check, calls = sequence_check([False] * 10)
        token = CancellationToken()
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=60, max_attempts=10)

        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel, "SIGTERM")
        result = await asyncio.wait_for(HealthPoller().poll(check, policy, token), timeout=5)

        assert result.outcome == PollOutcome.CANCELLED
        assert calls["count"] == 1

    def test_policy_max_wait(self):
        policy = HealthCheckPolicy(endpoint="http://x/health", interval_seconds=2.0, max_attempts=30)
        assert policy.max_wait_seconds == 60.0


class TestHttpCheck:
    """Test HTTP probes."""

    @pytest.mark.asyncio
    async def test_2xx_is_ready(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(204))
        real_client = httpx.AsyncClient

        with patch(
            "certdeploy.core.health_poller.httpx.AsyncClient",
            side_effect=lambda **kw: real_client(transport=transport),
        ):
            assert await http_check("http://service.test/health")() is True

    @pytest.mark.asyncio
    async def test_5xx_is_not_ready(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        real_client = httpx.AsyncClient

        with patch(
            "certdeploy.core.health_poller.httpx.AsyncClient",
            side_effect=lambda **kw: real_client(transport=transport),
        ):
            assert await http_check("http://service.test/health")() is False

    @pytest.mark.asyncio
    async def test_connection_error_is_not_ready(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = httpx.MockTransport(refuse)
        real_client = httpx.AsyncClient

        with patch(
            "certdeploy.core.health_poller.httpx.AsyncClient",
            side_effect=lambda **kw: real_client(transport=transport),
        ):
            assert await http_check("http://service.test/health")() is False

    @pytest.mark.asyncio
    async def test_check_health_once_reports_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        real_client = httpx.AsyncClient

        with patch(
            "certdeploy.core.health_poller.httpx.AsyncClient",
            side_effect=lambda **kw: real_client(transport=transport),
        ):
            healthy, error = await check_health_once("http://service.test/health")

        assert healthy is False
        assert error == "HTTP 500"
