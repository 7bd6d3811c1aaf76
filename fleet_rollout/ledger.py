import json
import os
import threading
import time
from dataclasses import replace
from .models import (
    ACTIVE_STATE, CALLBACK_PHASES, PHASES, REACHED_STATE, TERMINAL_ROLLOUT_STATES, Batch, BatchConfig,
    BatchState, FailurePolicy, Health, Outcome, Phase, PhaseRecord, Rollout, RolloutState,
    Target, TargetState,
)
from .errors import RolloutNotFoundError
from .logger import get_logger

logger = get_logger("ledger")


class ProgressLedger:
    """Append-only record of phase transitions, keyed by rollout id.

    ``append`` is the single write path. Writes are serialized under a lock
    so concurrent batches never interleave partial records, and each record
    is stamped with a monotonically increasing ``seq``. When ``path`` is set
    every record is also written and flushed as one JSON line through a
    handle kept open until ``close``; that file is all the state needed to
    rebuild a rollout after a restart.
    """

    def __init__(self, path=None, notify=None, clock=time.time):
        self.path = path
        self.notify = notify
        self.clock = clock
        self._records = []
        self._lock = threading.Lock()
        self._file = None

    @classmethod
    def load(cls, path, notify=None):
        ledger = cls(path=path, notify=notify)
        if os.path.exists(path):
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        ledger._records.append(PhaseRecord.from_dict(json.loads(line)))
            logger.debug(f"Loaded {len(ledger._records)} records from {path}")
        return ledger

    def append(self, record):
        with self._lock:
            seq = self._records[-1].seq + 1 if self._records else 1
            record = replace(record, seq=seq)
            if self.path:
                if self._file is None:
                    self._file = open(self.path, "a", encoding="utf-8")
                self._file.write(json.dumps(record.to_dict()) + "\n")
                self._file.flush()
            self._records.append(record)

        if self.notify is not None:
            # Observability sink is best effort
            try:
                self.notify(record)
            except Exception as e:
                logger.warning(f"Progress notification failed for record {record.seq}: {e}")
        return record

    def close(self):
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def record(self, rollout, batch, phase, outcome, diagnostic="", attempt=0, state=None, details=None):
        """Build a PhaseRecord for a rollout (and optionally a batch) and append it"""
        return self.append(PhaseRecord(
            rollout_id=rollout.rollout_id,
            batch_id=batch.batch_id if batch is not None else None,
            phase=phase,
            outcome=outcome,
            timestamp=self.clock(),
            diagnostic=diagnostic,
            attempt=attempt,
            state=state.value if state is not None else None,
            details=details or {},
        ))

    def records(self, rollout_id=None):
        with self._lock:
            records = list(self._records)
        if rollout_id is not None:
            records = [r for r in records if r.rollout_id == rollout_id]
        return sorted(records, key=lambda r: (r.timestamp, r.seq))

    def rollout_ids(self):
        seen = []
        for record in self.records():
            if record.rollout_id not in seen:
                seen.append(record.rollout_id)
        return seen

    def replay_state(self, rollout_id):
        """Rebuild a rollout by folding its records; safe to call any number of times"""
        records = self.records(rollout_id)
        rollout = None
        for record in records:
            if record.batch_id is None:
                rollout = _apply_rollout_record(rollout, record)
            elif rollout is not None:
                _apply_batch_record(rollout, record)
        if rollout is None:
            raise RolloutNotFoundError(rollout_id)
        return rollout


def _apply_rollout_record(rollout, record):
    if record.phase == Phase.PLAN:
        details = record.details
        return Rollout(
            rollout_id=record.rollout_id,
            batches=[],
            targets={},
            policy=FailurePolicy(details["policy"]),
            config=BatchConfig(**details.get("config", {})),
            op_spec=details.get("op_spec"),
            created_at=record.timestamp,
        )
    if rollout is None:
        return None

    if record.state:
        rollout.state = RolloutState(record.state)
    if rollout.state == RolloutState.PAUSED:
        rollout.paused_batch_id = record.details.get("batch_id")
    else:
        rollout.paused_batch_id = None
    if rollout.state in TERMINAL_ROLLOUT_STATES:
        rollout.ended_at = record.timestamp
    return rollout


def _apply_batch_record(rollout, record):
    if record.phase == Phase.PLAN:
        details = record.details
        batch = Batch(
            index=details["index"],
            batch_id=record.batch_id,
            group=details["group"],
            target_ids=list(details["targets"]),
        )
        rollout.batches.append(batch)
        members = details.get("members", {})
        for tid in batch.target_ids:
            member = members.get(tid, {})
            rollout.targets[tid] = Target(
                target_id=tid,
                group=member.get("group", batch.group),
                labels=dict(member.get("labels", {})),
            )
        return

    try:
        batch = rollout.batch(record.batch_id)
    except KeyError:
        logger.warning(f"Record {record.seq} references unknown batch {record.batch_id}")
        return

    if record.state:
        batch.state = BatchState(record.state)
    if record.phase in ACTIVE_STATE and record.outcome == Outcome.STARTED and batch.started_at is None:
        batch.started_at = record.timestamp

    if record.phase in PHASES and record.outcome == Outcome.SUCCESS:
        if record.phase not in batch.completed_phases:
            batch.completed_phases.append(record.phase)
        for tid in batch.target_ids:
            rollout.targets[tid].state = REACHED_STATE[record.phase]

    if record.phase in CALLBACK_PHASES and record.outcome != Outcome.SUCCESS:
        for tid in record.details.get("completed_targets", []):
            rollout.targets[tid].state = REACHED_STATE[record.phase]

    if record.phase == Phase.COMPENSATE and record.outcome == Outcome.SUCCESS:
        for tid in record.details.get("targets", []):
            rollout.targets[tid].state = TargetState.RESTORED

    if record.phase == Phase.BATCH:
        for tid in record.details.get("failed_targets", []):
            rollout.targets[tid].health = Health.FAILED
        if batch.state == BatchState.PENDING:
            # Operator asked for a retry
            batch.failure_reason = None
            batch.failed_phase = None
            batch.ended_at = None
        elif record.outcome in (Outcome.FAILURE, Outcome.SKIPPED):
            batch.failure_reason = record.diagnostic
            failed_phase = record.details.get("failed_phase")
            batch.failed_phase = Phase(failed_phase) if failed_phase else None
            batch.ended_at = record.timestamp
        else:
            batch.ended_at = record.timestamp
