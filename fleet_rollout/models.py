from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class Phase(str, Enum):
    PLAN = "plan"
    DRAIN = "drain"
    OPERATE = "operate"
    VERIFY = "verify"
    RESTORE = "restore"
    COMPENSATE = "compensate"
    BATCH = "batch"  # batch-level transitions
    ROLLOUT = "rollout"  # rollout-level transitions


# Lifecycle order a batch moves through
PHASES = (Phase.DRAIN, Phase.OPERATE, Phase.VERIFY, Phase.RESTORE)


class TargetState(str, Enum):
    PENDING = "pending"
    DRAINED = "drained"
    OPERATED = "operated"
    VERIFIED = "verified"
    RESTORED = "restored"


class BatchState(str, Enum):
    PENDING = "pending"
    DRAINING = "draining"
    OPERATING = "operating"
    VERIFYING = "verifying"
    RESTORING = "restoring"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class RolloutState(str, Enum):
    PLANNED = "planned"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class Outcome(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class FailurePolicy(str, Enum):
    ABORT_ON_FIRST_FAILURE = "abort-on-first-failure"
    BEST_EFFORT = "best-effort"
    PAUSE_FOR_OPERATOR = "pause-for-operator"


class Action(str, Enum):
    ABORT = "abort"
    PAUSE_FOR_OPERATOR = "pause_for_operator"
    SKIP_AND_CONTINUE = "skip_and_continue"
    COMPENSATE_THEN_CONTINUE = "compensate_then_continue"


class ResumeDecision(str, Enum):
    RETRY = "retry"  # re-run the paused batch from its failed phase
    SKIP = "skip"  # leave the paused batch failed and move on
    CONTINUE = "continue"  # resume after an operator/deadline pause


# Batch state entered when a phase starts, and target state reached when it succeeds
ACTIVE_STATE = {
    Phase.DRAIN: BatchState.DRAINING,
    Phase.OPERATE: BatchState.OPERATING,
    Phase.VERIFY: BatchState.VERIFYING,
    Phase.RESTORE: BatchState.RESTORING,
}
REACHED_STATE = {
    Phase.DRAIN: TargetState.DRAINED,
    Phase.OPERATE: TargetState.OPERATED,
    Phase.VERIFY: TargetState.VERIFIED,
    Phase.RESTORE: TargetState.RESTORED,
}

# Phases whose callback alone moves a target forward; Verify also needs its gate
CALLBACK_PHASES = (Phase.DRAIN, Phase.OPERATE, Phase.RESTORE)

TERMINAL_BATCH_STATES = frozenset({
    BatchState.COMPLETED, BatchState.FAILED, BatchState.ROLLED_BACK, BatchState.CANCELLED,
})
TERMINAL_ROLLOUT_STATES = frozenset({
    RolloutState.COMPLETED, RolloutState.COMPLETED_WITH_FAILURES,
    RolloutState.ABORTED, RolloutState.CANCELLED,
})


@dataclass
class Target:
    target_id: str
    group: str = "default"
    state: TargetState = TargetState.PENDING
    health: Health = Health.HEALTHY
    retry_count: int = 0
    labels: dict = field(default_factory=dict)


@dataclass
class BatchConfig:
    """Configuration for rollout behavior"""
    max_batch_size: int = 10  # Targets per batch
    max_concurrent_batches: int = 1  # 1 means strictly sequential
    inter_batch_delay_s: float = 0.0  # Gap after the previous batch of the same group ends
    phase_timeout_s: float = None  # Timeout per target per phase attempt
    retry_max_attempts: int = 3  # Total attempts per phase, including the first
    retry_base_delay_s: float = 1.0  # Backoff base, doubled on every retry
    retry_max_delay_s: float = 30.0  # Backoff cap
    min_ready_fraction: float = 1.0  # Readiness ratio the health gate requires
    stabilization_window_s: float = 30.0  # How long readiness must hold
    health_poll_interval_s: float = 10.0
    health_timeout_s: float = 600.0
    max_health_resets: int = 3  # Flaps tolerated before the gate fails
    deadline_s: float = None  # Overall rollout deadline, forces a pause
    maintenance_window: str = None  # e.g. "Sun 02:00-06:00"; starting outside it pauses


@dataclass
class Batch:
    index: int
    batch_id: str
    group: str
    target_ids: list
    state: BatchState = BatchState.PENDING
    started_at: float = None
    ended_at: float = None
    failure_reason: str = None
    failed_phase: Phase = None
    completed_phases: list = field(default_factory=list)

    def next_phase(self):
        """First lifecycle phase this batch has not completed yet"""
        for phase in PHASES:
            if phase not in self.completed_phases:
                return phase
        return None


@dataclass
class Rollout:
    rollout_id: str
    batches: list
    targets: dict
    policy: FailurePolicy = FailurePolicy.BEST_EFFORT
    config: BatchConfig = field(default_factory=BatchConfig)
    state: RolloutState = RolloutState.PLANNED
    op_spec: dict = None
    paused_batch_id: str = None
    created_at: float = None
    ended_at: float = None

    @property
    def max_concurrent_batches(self):
        return self.config.max_concurrent_batches

    def batch(self, batch_id):
        for batch in self.batches:
            if batch.batch_id == batch_id:
                return batch
        raise KeyError(batch_id)

    def batch_targets(self, batch):
        return [self.targets[tid] for tid in batch.target_ids]

    def failed_batches(self):
        return [b for b in self.batches if b.state in (BatchState.FAILED, BatchState.ROLLED_BACK)]

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class PhaseRecord:
    """A single immutable ledger entry"""
    rollout_id: str
    batch_id: Optional[str]
    phase: Phase
    outcome: Outcome
    timestamp: float
    diagnostic: str = ""
    attempt: int = 0
    state: Optional[str] = None  # Batch or rollout state entered by this transition
    details: dict = field(default_factory=dict)
    seq: int = 0  # Assigned by the ledger on append

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["phase"] = Phase(data["phase"])
        data["outcome"] = Outcome(data["outcome"])
        return cls(**data)


@dataclass(frozen=True)
class HealthSnapshot:
    ready_count: int
    total_count: int
    degraded: bool = False
    sampled_at: float = None
    resets: int = 0  # Stabilization window restarts before this verdict

    @property
    def ready_fraction(self):
        if self.total_count == 0:
            return 1.0
        return self.ready_count / self.total_count
