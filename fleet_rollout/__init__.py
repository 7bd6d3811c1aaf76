from .models import (
    Health, Phase, TargetState, BatchState, RolloutState, Outcome, FailurePolicy,
    Action, ResumeDecision, Target, BatchConfig, Batch, Rollout, PhaseRecord, HealthSnapshot
)
from .errors import (
    RolloutError, InvalidPlanError, HealthTimeoutError, HealthFlappingError,
    RolloutAbortedError, RolloutNotFoundError, RolloutStateError, RolloutCancelledError,
    TransientError, PermanentError
)
from .planner import plan
from .health import HealthGate
from .executor import PhaseExecutor
from .rollback import RollbackController
from .ledger import ProgressLedger
from .orchestrator import RolloutOrchestrator
from .cluster import ClusterActions, SimulatedCluster
from .kubectl import KubectlCluster
from .cancellation import CancellationToken
from .window import MaintenanceWindow

__all__ = [
    "Health", "Phase", "TargetState", "BatchState", "RolloutState", "Outcome",
    "FailurePolicy", "Action", "ResumeDecision",
    "Target", "BatchConfig", "Batch", "Rollout", "PhaseRecord", "HealthSnapshot",
    "RolloutError", "InvalidPlanError", "HealthTimeoutError", "HealthFlappingError",
    "RolloutAbortedError", "RolloutNotFoundError", "RolloutStateError",
    "RolloutCancelledError", "TransientError", "PermanentError",
    "plan", "HealthGate", "PhaseExecutor", "RollbackController", "ProgressLedger",
    "RolloutOrchestrator", "ClusterActions", "SimulatedCluster", "KubectlCluster",
    "CancellationToken", "MaintenanceWindow"
]
