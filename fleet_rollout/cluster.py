import asyncio
import time
from .models import HealthSnapshot
from .errors import PermanentError, TransientError


class ClusterActions:
    """Collaborator interface the orchestrator drives.

    Every action is a coroutine taking a Target. Actions signal failure by
    raising; ``TransientError``/``PermanentError`` classify explicitly, any
    other exception is classified by ``errors.classify_error``.
    """

    async def drain_target(self, target):
        raise NotImplementedError

    async def restore_target(self, target):
        raise NotImplementedError

    async def apply_operation(self, target, op_spec):
        raise NotImplementedError

    async def verify_target(self, target):
        """Custom verification hook run in the Verify phase"""
        return None

    async def readiness_probe(self, target):
        raise NotImplementedError

    def notify_progress(self, record):
        """Observability sink, called for every ledger record"""
        return None


class SimulatedCluster(ClusterActions):
    """In-memory cluster with scripted failures, for dry runs and tests.

    ``failures`` maps a phase name to ``{target_id: n}``: the first n calls
    for that target raise a transient error. ``permanent`` maps a phase name
    to target ids that always fail permanently. ``unready`` holds target ids
    whose readiness probe reports not ready.
    """

    def __init__(self, failures=None, permanent=None, delay=0, unready=None):
        self.failures = failures or {}
        self.permanent = permanent or {}
        self.delay = delay
        self.unready = set(unready or ())
        self.attempts = {}
        self.calls = []
        self.drained = set()
        self.operated = {}
        self.records = []

    def delay_seconds(self, phase):
        if isinstance(self.delay, dict):
            return self.delay.get(phase, 0)
        return self.delay

    async def _act(self, phase, target):
        key = (phase, target.target_id)
        self.attempts[key] = self.attempts.get(key, 0) + 1
        self.calls.append(key)

        delay = self.delay_seconds(phase)
        if delay > 0:
            await asyncio.sleep(delay)

        if target.target_id in self.permanent.get(phase, ()):
            raise PermanentError(f"{phase} rejected for {target.target_id}")
        if self.attempts[key] <= self.failures.get(phase, {}).get(target.target_id, 0):
            raise TransientError(f"simulated {phase} failure on {target.target_id}")

    async def drain_target(self, target):
        await self._act("drain", target)
        self.drained.add(target.target_id)

    async def restore_target(self, target):
        await self._act("restore", target)
        self.drained.discard(target.target_id)

    async def apply_operation(self, target, op_spec):
        await self._act("operate", target)
        self.operated[target.target_id] = op_spec

    async def verify_target(self, target):
        await self._act("verify", target)

    async def readiness_probe(self, target):
        ready = 0 if target.target_id in self.unready else 1
        return HealthSnapshot(ready_count=ready, total_count=1, sampled_at=time.time())

    def notify_progress(self, record):
        self.records.append(record)

    def calls_for(self, phase):
        return [tid for p, tid in self.calls if p == phase]
