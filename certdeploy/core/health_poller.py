"""
Bounded health polling.

Provides the retry primitive used by certificate validation and
deployments, plus HTTP probes to verify a service is responding.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import httpx

from certdeploy.config import settings
from certdeploy.core.cancellation import CancellationToken
from certdeploy.models.health import HealthCheckPolicy, PollOutcome, PollResult

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]


class HealthPoller:
    """Call a readiness check a bounded number of times."""

    async def poll(
        self,
        check: HealthCheck,
        policy: HealthCheckPolicy,
        cancel_token: CancellationToken | None = None,
    ) -> PollResult:
        """
        Poll a check until it succeeds, attempts run out, or cancellation.

        Args:
            check: Async callable returning True when ready
            policy: Attempts and interval to use
            cancel_token: Optional token that aborts the loop

        Returns:
            PollResult with SUCCESS, TIMEOUT or CANCELLED
        """
        started = time.monotonic()
        last_error = None
        attempts = 0

        for attempt in range(1, policy.max_attempts + 1):
            if cancel_token and cancel_token.cancelled:
                return self._result(PollOutcome.CANCELLED, attempts, started, cancel_token.reason)

            attempts = attempt
            try:
                if await check():
                    logger.info(f"Health check passed on attempt {attempt}/{policy.max_attempts}")
                    return self._result(PollOutcome.SUCCESS, attempts, started, None)
                last_error = "check returned not ready"
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"

            logger.info(f"Health check attempt {attempt}/{policy.max_attempts} failed: {last_error}")

            # Wait before retry (except on last attempt)
            if attempt < policy.max_attempts:
                if cancel_token:
                    if await cancel_token.wait(policy.interval_seconds):
                        return self._result(PollOutcome.CANCELLED, attempts, started, cancel_token.reason)
                else:
                    await asyncio.sleep(policy.interval_seconds)

        logger.warning(f"Health check failed after {attempts} attempts: {last_error}")
        return self._result(PollOutcome.TIMEOUT, attempts, started, last_error)

    @staticmethod
    def _result(outcome: PollOutcome, attempts: int, started: float, last_error: str | None) -> PollResult:
        return PollResult(
            outcome=outcome,
            attempts=attempts,
            elapsed_seconds=round(time.monotonic() - started, 3),
            last_error=last_error,
        )


def http_check(endpoint: str, timeout: float | None = None, verify: bool = False) -> HealthCheck:
    """
    Build a probe that GETs an endpoint and succeeds on any 2xx response.

    Connection errors and timeouts mean "not ready yet" rather than failures
    of the poller. TLS verification is off by default since a freshly
    deployed service may be serving a self-signed certificate.
    """
    request_timeout = timeout if timeout is not None else settings.health_check_timeout

    async def check() -> bool:
        try:
            async with httpx.AsyncClient(verify=verify) as client:
                response = await client.get(endpoint, timeout=request_timeout)
        except httpx.RequestError as e:
            logger.debug(f"Health probe {endpoint} failed: {e}")
            return False
        return response.is_success

    return check


async def check_health_once(endpoint: str | None = None, timeout: float | None = None) -> tuple[bool, str | None]:
    """
    Single health check without retries.

    Returns:
        Tuple of (is_healthy, error_message)
    """
    endpoint = endpoint or settings.health_endpoint
    request_timeout = timeout if timeout is not None else settings.health_check_timeout

    try:
        async with httpx.AsyncClient(verify=False) as client:
            response = await client.get(endpoint, timeout=request_timeout)
    except httpx.RequestError as e:
        return False, str(e) or type(e).__name__

    if response.is_success:
        return True, None
    return False, f"HTTP {response.status_code}"


# Singleton instance
health_poller = HealthPoller()
