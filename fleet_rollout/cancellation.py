import asyncio
from .errors import RolloutCancelledError


class CancellationToken:
    """Rollout-scoped cancellation flag that waits can observe"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self, reason="cancelled by operator"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RolloutCancelledError(self.reason)

    async def wait(self):
        await self._event.wait()

    async def sleep(self, delay):
        """Sleep for delay seconds, waking early and raising if cancelled"""
        if delay and delay > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
