"""
Cancellation tokens for long-running orchestration steps.

A token is checked between atomic steps and awaited during sleeps, so an
operator abort or a termination signal interrupts polling promptly without
cutting a container operation in half.
"""

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal shared by pollers and controllers."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Repeated calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            logger.warning(f"Cancellation requested: {reason}")
            self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until cancelled or until timeout elapses.

        Returns:
            True if the token was cancelled, False on timeout
        """
        if timeout is not None and timeout <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


def install_signal_handlers(token: CancellationToken) -> None:
    """Route SIGTERM/SIGINT on the running loop to the token."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            logger.debug(f"Cannot install handler for {sig.name}")
