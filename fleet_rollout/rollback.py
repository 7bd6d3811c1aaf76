import asyncio
from .models import Action, BatchState, FailurePolicy, Health, Outcome, Phase, TargetState
from .logger import get_logger

# Failures after which targets can be left drained unless something restores them
COMPENSABLE_PHASES = (Phase.OPERATE, Phase.RESTORE)


class RollbackController:
    """Decides what happens to a rollout once one of its batches has failed.

    ``compensations`` maps a failed phase to a coroutine function taking a
    Target (typically the cluster's restore/uncordon action). A registered
    compensation is run before the rollout moves on, so an Operate or
    Restore failure never leaves healthy targets out of service.
    """

    def __init__(self, ledger, compensations=None):
        self.ledger = ledger
        self.compensations = dict(compensations or {})
        self.logger = get_logger("rollback")

    def register(self, phase, action):
        self.compensations[Phase(phase)] = action

    def can_compensate(self, batch):
        return batch.failed_phase in COMPENSABLE_PHASES and batch.failed_phase in self.compensations

    def decide(self, policy, batch):
        policy = FailurePolicy(policy)
        if policy == FailurePolicy.ABORT_ON_FIRST_FAILURE:
            action = Action.ABORT
        elif policy == FailurePolicy.PAUSE_FOR_OPERATOR:
            action = Action.PAUSE_FOR_OPERATOR
        elif self.can_compensate(batch):
            action = Action.COMPENSATE_THEN_CONTINUE
        else:
            action = Action.SKIP_AND_CONTINUE

        self.logger.info(f"Batch {batch.batch_id} failed under {policy.value} policy: {action.value}")
        return action

    async def compensate(self, rollout, batch):
        """Run the registered compensation for the batch's failed phase.

        Targets that failed themselves stay where they are so an operator can
        inspect them; every other target that was taken out of service is
        handed to the compensation. On success the batch becomes RolledBack.
        """
        action = self.compensations[batch.failed_phase]
        targets = [
            t for t in rollout.batch_targets(batch)
            if t.health != Health.FAILED and t.state not in (TargetState.PENDING, TargetState.RESTORED)
        ]
        target_ids = [t.target_id for t in targets]
        self.ledger.record(rollout, batch, Phase.COMPENSATE, Outcome.STARTED,
                           f"compensating {batch.failed_phase.value} failure", details={"targets": target_ids})
        self.logger.warning(f"Compensating batch {batch.batch_id}: restoring {len(targets)} targets")

        results = await asyncio.gather(*(action(t) for t in targets), return_exceptions=True)
        errors = [(t, r) for t, r in zip(targets, results) if isinstance(r, Exception)]
        if errors:
            diagnostic = "; ".join(f"{t.target_id}: {e}" for t, e in errors)
            self.logger.error(f"Compensation failed for batch {batch.batch_id}: {diagnostic}")
            self.ledger.record(rollout, batch, Phase.COMPENSATE, Outcome.FAILURE, diagnostic,
                               details={"failed_targets": [t.target_id for t, _ in errors]})
            return False

        for target in targets:
            target.state = TargetState.RESTORED
        batch.state = BatchState.ROLLED_BACK
        self.ledger.record(rollout, batch, Phase.COMPENSATE, Outcome.SUCCESS, state=BatchState.ROLLED_BACK,
                           details={"targets": target_ids})
        return True

    def abort_pending(self, rollout, batches, reason):
        """Mark batches that never started as failed without an attempt"""
        for batch in batches:
            if batch.state != BatchState.PENDING:
                continue
            batch.state = BatchState.FAILED
            batch.failure_reason = f"not attempted: {reason}"
            self.ledger.record(rollout, batch, Phase.BATCH, Outcome.SKIPPED, batch.failure_reason,
                               state=BatchState.FAILED)
        self.logger.warning(f"Rollout {rollout.rollout_id} aborted: {reason}")
