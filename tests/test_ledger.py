import json
import pytest
from fleet_rollout.models import (
    Target, Phase, Outcome, PhaseRecord, BatchState, RolloutState, TargetState,
)
from fleet_rollout.ledger import ProgressLedger
from fleet_rollout.orchestrator import RolloutOrchestrator
from fleet_rollout.cluster import SimulatedCluster
from fleet_rollout.errors import RolloutNotFoundError


def make_record(rollout_id="r1", batch_id="A-1", outcome=Outcome.STARTED, timestamp=1.0):
    return PhaseRecord(rollout_id=rollout_id, batch_id=batch_id, phase=Phase.DRAIN,
                       outcome=outcome, timestamp=timestamp)


def batch_view(rollout):
    return [(b.batch_id, b.state, b.completed_phases, b.failure_reason, b.failed_phase)
            for b in rollout.batches]


class TestProgressLedger:
    """Ledger append and persistence tests."""

    def test_append_assigns_sequence(self):
        ledger = ProgressLedger()
        first = ledger.append(make_record())
        second = ledger.append(make_record(outcome=Outcome.SUCCESS))

        assert (first.seq, second.seq) == (1, 2)
        assert [r.outcome for r in ledger.records()] == [Outcome.STARTED, Outcome.SUCCESS]

    def test_records_filtered_and_ordered(self):
        ledger = ProgressLedger()
        ledger.append(make_record("r1", timestamp=5.0))
        ledger.append(make_record("r2", timestamp=1.0))
        ledger.append(make_record("r1", timestamp=2.0))

        assert [r.timestamp for r in ledger.records("r1")] == [2.0, 5.0]
        assert ledger.rollout_ids() == ["r2", "r1"]

    def test_records_written_as_json_lines(self, tmp_path):
        path = tmp_path / "ledger.jsonl"
        ledger = ProgressLedger(path=str(path))
        ledger.append(make_record())
        ledger.append(make_record(outcome=Outcome.SUCCESS))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["outcome"] == "success"

        loaded = ProgressLedger.load(str(path))
        assert [r.to_dict() for r in loaded.records()] == [r.to_dict() for r in ledger.records()]
        assert loaded.append(make_record()).seq == 3

    def test_file_handle_kept_open_until_close(self, tmp_path):
        path = tmp_path / "ledger.jsonl"
        ledger = ProgressLedger(path=str(path))
        ledger.append(make_record())
        handle = ledger._file
        ledger.append(make_record(outcome=Outcome.SUCCESS))

        assert ledger._file is handle
        ledger.close()
        assert handle.closed
        ledger.close()

        # Appending after close reopens the file
        ledger.append(make_record(outcome=Outcome.FAILURE))
        ledger.close()
        assert [json.loads(line)["seq"] for line in path.read_text().splitlines()] == [1, 2, 3]

    def test_load_missing_file_is_empty(self, tmp_path):
        assert ProgressLedger.load(str(tmp_path / "missing.jsonl")).records() == []

    def test_notify_failure_does_not_fail_append(self):
        def notify(record):
            raise RuntimeError("sink down")

        ledger = ProgressLedger(notify=notify)
        record = ledger.append(make_record())

        assert record.seq == 1
        assert len(ledger.records()) == 1

    def test_replay_unknown_rollout(self):
        with pytest.raises(RolloutNotFoundError):
            ProgressLedger().replay_state("missing")


class TestReplay:
    """Rebuilding rollouts from the ledger."""

    @pytest.mark.asyncio
    async def test_replay_matches_live_rollout(self, fast_config):
        cluster = SimulatedCluster(permanent={"operate": {"B1"}})
        orchestrator = RolloutOrchestrator(cluster)
        targets = [Target(f"{g}{i}", g) for g in "AB" for i in range(4)]
        rollout_id = await orchestrator.start_rollout(targets, config=fast_config)
        live = await orchestrator.wait_rollout(rollout_id)

        replayed = orchestrator.ledger.replay_state(rollout_id)

        assert replayed.state == live.state == RolloutState.COMPLETED_WITH_FAILURES
        assert batch_view(replayed) == batch_view(live)
        assert {tid: t.state for tid, t in replayed.targets.items()} == \
               {tid: t.state for tid, t in live.targets.items()}
        assert replayed.targets["B1"].state == TargetState.DRAINED
        assert replayed.batch("B-1").state == BatchState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_replay_keeps_labels_and_custom_groups(self, fast_config):
        targets = [
            Target("n1", "A", labels={"production-line": "A", "zone": "east"}),
            Target("n2", "A", labels={"production-line": "A", "zone": "west"}),
            Target("n3", "B", labels={"production-line": "B", "zone": "east"}),
        ]
        orchestrator = RolloutOrchestrator(SimulatedCluster())
        rollout_id = await orchestrator.start_rollout(targets, config=fast_config,
                                                      group_by=lambda t: t.labels["zone"])
        live = await orchestrator.wait_rollout(rollout_id)

        replayed = orchestrator.ledger.replay_state(rollout_id)

        assert [b.group for b in replayed.batches] == ["east", "west"]
        # The target keeps its own group; the batch carries the grouping key
        assert replayed.targets["n3"].group == live.targets["n3"].group == "B"
        assert replayed.targets["n2"].labels == {"production-line": "A", "zone": "west"}
        assert replayed.targets == live.targets

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, fast_config, tmp_path):
        path = str(tmp_path / "ledger.jsonl")
        orchestrator = RolloutOrchestrator(SimulatedCluster(), ledger=ProgressLedger(path=path))
        rollout_id = await orchestrator.start_rollout([Target("n1"), Target("n2"), Target("n3")],
                                                      config=fast_config)
        await orchestrator.wait_rollout(rollout_id)

        ledger = ProgressLedger.load(path)
        first = ledger.replay_state(rollout_id)
        second = ledger.replay_state(rollout_id)

        assert first.to_dict() == second.to_dict()
        assert first.state == RolloutState.COMPLETED
        assert [b.state for b in first.batches] == [BatchState.COMPLETED, BatchState.COMPLETED]
