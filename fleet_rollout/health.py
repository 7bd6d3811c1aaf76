import asyncio
import time
from .models import HealthSnapshot
from .errors import HealthFlappingError, HealthTimeoutError
from .logger import get_logger


class HealthGate:
    """Readiness checkpoint between phases.

    The gate polls ``probe`` for every target at a fixed interval until the
    ready ratio has stayed at or above ``min_ready_fraction`` for the whole
    stabilization window. A regression after the threshold was reached
    restarts the window and marks the eventual snapshot degraded; more than
    ``max_resets`` restarts fail the gate. The gate never mutates anything.
    """

    def __init__(self, probe, poll_interval_s=10.0, max_resets=3, clock=time.monotonic, sleep=None):
        self.probe = probe
        self.poll_interval_s = poll_interval_s
        self.max_resets = max_resets
        self.clock = clock
        self._sleep = sleep
        self.logger = get_logger("health")

    async def sample(self, targets):
        """Aggregate one probe round into a snapshot"""
        results = await asyncio.gather(*(self.probe(t) for t in targets), return_exceptions=True)

        ready = 0
        total = 0
        degraded = False
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                self.logger.debug(f"Readiness probe failed for {target.target_id}: {result}")
                total += 1
                continue
            ready += result.ready_count
            total += result.total_count
            degraded = degraded or result.degraded

        return HealthSnapshot(ready_count=ready, total_count=total, degraded=degraded, sampled_at=time.time())

    async def _pause(self, delay, token):
        if self._sleep is not None:
            await self._sleep(delay)
            if token is not None:
                token.raise_if_cancelled()
        elif token is not None:
            await token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    async def evaluate(self, targets, min_ready_fraction, stabilization_window_s, timeout_s, token=None):
        if not 0 < min_ready_fraction <= 1:
            raise ValueError("min_ready_fraction must be in (0, 1]")

        targets = list(targets)
        start = self.clock()
        stable_since = None
        resets = 0

        while True:
            if token is not None:
                token.raise_if_cancelled()

            snapshot = await self.sample(targets)
            now = self.clock()
            self.logger.debug(f"Ready {snapshot.ready_count}/{snapshot.total_count}")

            if snapshot.ready_fraction >= min_ready_fraction:
                if stable_since is None:
                    stable_since = now
                if now - stable_since >= stabilization_window_s:
                    return HealthSnapshot(
                        ready_count=snapshot.ready_count,
                        total_count=snapshot.total_count,
                        degraded=snapshot.degraded or resets > 0,
                        sampled_at=snapshot.sampled_at,
                        resets=resets,
                    )
            elif stable_since is not None:
                resets += 1
                stable_since = None
                self.logger.warning(f"Readiness regressed to {snapshot.ready_count}/{snapshot.total_count} "
                                    f"inside the stabilization window (reset {resets}/{self.max_resets})")
                if resets > self.max_resets:
                    raise HealthFlappingError(
                        f"readiness flapped {resets} times without stabilizing",
                        snapshot=snapshot,
                    )

            elapsed = now - start
            if elapsed >= timeout_s:
                raise HealthTimeoutError(
                    f"readiness {snapshot.ready_count}/{snapshot.total_count} did not hold "
                    f">= {min_ready_fraction:.0%} for {stabilization_window_s}s within {timeout_s}s",
                    snapshot=snapshot,
                )

            await self._pause(min(self.poll_interval_s, timeout_s - elapsed), token)
