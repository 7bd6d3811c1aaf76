import asyncio


class RolloutError(Exception):
    """Base class for orchestrator errors"""


class InvalidPlanError(RolloutError, ValueError):
    pass


class HealthTimeoutError(RolloutError):
    def __init__(self, message, snapshot=None):
        super().__init__(message)
        self.snapshot = snapshot


class HealthFlappingError(HealthTimeoutError):
    """Readiness kept regressing inside the stabilization window"""


class RolloutAbortedError(RolloutError):
    def __init__(self, rollout_id, reason):
        super().__init__(f"rollout {rollout_id} aborted: {reason}")
        self.rollout_id = rollout_id
        self.reason = reason


class RolloutNotFoundError(RolloutError, KeyError):
    def __init__(self, rollout_id):
        super().__init__(f"rollout not found: {rollout_id}")
        self.rollout_id = rollout_id

    def __str__(self):
        return self.args[0]


class RolloutStateError(RolloutError):
    """Command not valid in the rollout's current state"""


class RolloutCancelledError(RolloutError):
    pass


class TransientError(RolloutError):
    """Failure worth retrying (network blip, resource contention)"""


class PermanentError(RolloutError):
    """Failure that retrying cannot fix (bad config, target gone)"""


TRANSIENT = "transient"
PERMANENT = "permanent"


def classify_error(exc):
    """Map a raw collaborator error to TRANSIENT or PERMANENT"""
    if isinstance(exc, TransientError):
        return TRANSIENT
    if isinstance(exc, PermanentError):
        return PERMANENT
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return TRANSIENT
    if isinstance(exc, (LookupError, ValueError, TypeError)):
        return PERMANENT
    return TRANSIENT
