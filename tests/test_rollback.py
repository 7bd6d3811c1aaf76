import pytest
from fleet_rollout.models import (
    Target, Phase, Outcome, BatchState, TargetState, Health, Action, FailurePolicy,
)
from fleet_rollout.planner import plan
from fleet_rollout.rollback import RollbackController
from fleet_rollout.ledger import ProgressLedger
from fleet_rollout.cluster import SimulatedCluster


def failed_rollout(failed_phase=Phase.OPERATE):
    rollout = plan([Target(f"n{i}", "A") for i in range(3)], max_batch_size=3)
    batch = rollout.batches[0]
    batch.state = BatchState.FAILED
    batch.failed_phase = failed_phase
    for target in rollout.targets.values():
        target.state = TargetState.DRAINED
    rollout.targets["n1"].health = Health.FAILED
    return rollout, batch


class TestRollbackDecisions:
    """Failure policy decisions."""

    def test_abort_policy(self):
        _, batch = failed_rollout()
        controller = RollbackController(ProgressLedger(), {Phase.OPERATE: None})
        assert controller.decide(FailurePolicy.ABORT_ON_FIRST_FAILURE, batch) == Action.ABORT

    def test_pause_policy(self):
        _, batch = failed_rollout()
        controller = RollbackController(ProgressLedger())
        assert controller.decide("pause-for-operator", batch) == Action.PAUSE_FOR_OPERATOR

    def test_best_effort_compensates_when_registered(self):
        _, batch = failed_rollout(Phase.OPERATE)
        controller = RollbackController(ProgressLedger())
        assert controller.decide("best-effort", batch) == Action.SKIP_AND_CONTINUE

        controller.register("operate", SimulatedCluster().restore_target)
        assert controller.decide("best-effort", batch) == Action.COMPENSATE_THEN_CONTINUE

    def test_best_effort_skips_drain_failures(self):
        _, batch = failed_rollout(Phase.DRAIN)
        controller = RollbackController(ProgressLedger(), {Phase.DRAIN: SimulatedCluster().restore_target})
        assert controller.can_compensate(batch) is False
        assert controller.decide(FailurePolicy.BEST_EFFORT, batch) == Action.SKIP_AND_CONTINUE


class TestCompensation:
    """Compensation and abort bookkeeping."""

    @pytest.mark.asyncio
    async def test_compensate_restores_healthy_targets(self):
        rollout, batch = failed_rollout()
        cluster = SimulatedCluster()
        cluster.drained = {"n0", "n1", "n2"}
        ledger = ProgressLedger()
        controller = RollbackController(ledger, {Phase.OPERATE: cluster.restore_target})

        assert await controller.compensate(rollout, batch) is True

        assert batch.state == BatchState.ROLLED_BACK
        assert cluster.drained == {"n1"}
        assert rollout.targets["n0"].state == TargetState.RESTORED
        assert rollout.targets["n1"].state == TargetState.DRAINED
        records = ledger.records()
        assert [(r.phase, r.outcome) for r in records] == [
            (Phase.COMPENSATE, Outcome.STARTED), (Phase.COMPENSATE, Outcome.SUCCESS),
        ]
        assert records[-1].details == {"targets": ["n0", "n2"]}

    @pytest.mark.asyncio
    async def test_compensation_failure_keeps_batch_failed(self):
        rollout, batch = failed_rollout()
        cluster = SimulatedCluster(permanent={"restore": {"n0"}})
        ledger = ProgressLedger()
        controller = RollbackController(ledger, {Phase.OPERATE: cluster.restore_target})

        assert await controller.compensate(rollout, batch) is False

        assert batch.state == BatchState.FAILED
        assert ledger.records()[-1].outcome == Outcome.FAILURE
        assert ledger.records()[-1].details == {"failed_targets": ["n0"]}

    def test_abort_pending_only_touches_pending(self):
        rollout = plan([Target(f"n{i}", "A") for i in range(4)], max_batch_size=1)
        rollout.batches[0].state = BatchState.COMPLETED
        ledger = ProgressLedger()

        RollbackController(ledger).abort_pending(rollout, rollout.batches, "batch A-2 failed")

        assert rollout.batches[0].state == BatchState.COMPLETED
        for batch in rollout.batches[1:]:
            assert batch.state == BatchState.FAILED
            assert batch.failure_reason == "not attempted: batch A-2 failed"
        assert [r.outcome for r in ledger.records()] == [Outcome.SKIPPED] * 3
