import asyncio
import time
from collections import deque
from dataclasses import asdict
from datetime import datetime
from .models import (
    TERMINAL_BATCH_STATES, TERMINAL_ROLLOUT_STATES, Action, BatchState, FailurePolicy,
    Outcome, Phase, ResumeDecision, RolloutState,
)
from .errors import (
    RolloutAbortedError, RolloutCancelledError, RolloutNotFoundError, RolloutStateError,
)
from .cancellation import CancellationToken
from .executor import PhaseExecutor
from .ledger import ProgressLedger
from .planner import plan
from .rollback import RollbackController
from .window import MaintenanceWindow
from .logger import get_logger

_ROLLOUT_OUTCOME = {
    RolloutState.PLANNED: Outcome.STARTED,
    RolloutState.RUNNING: Outcome.STARTED,
    RolloutState.PAUSED: Outcome.STARTED,
    RolloutState.COMPLETED: Outcome.SUCCESS,
    RolloutState.COMPLETED_WITH_FAILURES: Outcome.FAILURE,
    RolloutState.ABORTED: Outcome.FAILURE,
    RolloutState.CANCELLED: Outcome.CANCELLED,
}


class _RolloutRun:
    """Runtime handles for one rollout being driven by the orchestrator"""

    def __init__(self, rollout):
        self.rollout = rollout
        self.token = CancellationToken()
        self.decisions = asyncio.Queue()
        self.settled = asyncio.Event()
        self.pause_requested = False
        self.pause_reason = None
        self.deadline = None
        self.aborted = False
        self.abort_reason = None
        self.awaiting = deque()  # failed batches waiting on an operator decision
        self.unhandled = set()  # failed batch ids the dispatcher has not handled yet
        self.crashed = set()  # batch ids that failed with an unexpected error
        self.group_ended = {}  # group -> monotonic end of its latest batch
        self.last_ended = None
        self.task = None


class RolloutOrchestrator:
    """Command surface for starting, steering and inspecting rollouts.

    Batches are dispatched in sequence order with at most
    ``max_concurrent_batches`` in flight. Batches of the same group never
    overlap: the next batch of a group is launched only once the previous
    one has finished and its failure (if any) has been handled. A launched
    batch re-checks the rollout after its inter-batch delay and stays
    Pending if the rollout stopped dispatching in the meantime.
    """

    def __init__(self, cluster, ledger=None, compensations=None, health_gate=None, sleep=None,
                 now=datetime.now):
        self.cluster = cluster
        self.ledger = ledger or ProgressLedger()
        if self.ledger.notify is None:
            self.ledger.notify = cluster.notify_progress
        if compensations is None:
            compensations = {Phase.OPERATE: cluster.restore_target, Phase.RESTORE: cluster.restore_target}
        self._sleep = sleep
        self._now = now
        self.executor = PhaseExecutor(cluster, self.ledger, health_gate=health_gate, sleep=sleep)
        self.rollback = RollbackController(self.ledger, compensations)
        self.logger = get_logger("orchestrator")
        self._runs = {}

    async def start_rollout(self, targets, policy=FailurePolicy.BEST_EFFORT, config=None, op_spec=None,
                            group_by=None, group_order=None, rollout_id=None):
        """Plan and launch a rollout, returning its id"""
        if rollout_id is not None and rollout_id in self._runs:
            raise RolloutStateError(f"rollout {rollout_id} already exists")
        rollout = plan(targets, group_by=group_by, group_order=group_order, policy=policy,
                       config=config, op_spec=op_spec, rollout_id=rollout_id)
        return self.launch(rollout)

    def launch(self, rollout):
        """Record the plan of an already planned rollout and start driving it"""
        self.ledger.record(rollout, None, Phase.PLAN, Outcome.SUCCESS, state=RolloutState.PLANNED, details={
            "policy": rollout.policy.value,
            "config": asdict(rollout.config),
            "op_spec": rollout.op_spec,
        })
        for batch in rollout.batches:
            self.ledger.record(rollout, batch, Phase.PLAN, Outcome.SUCCESS, state=BatchState.PENDING, details={
                "index": batch.index,
                "group": batch.group,
                "targets": batch.target_ids,
                "members": {
                    t.target_id: {"group": t.group, "labels": t.labels}
                    for t in rollout.batch_targets(batch)
                },
            })
        self._spawn(rollout)
        return rollout.rollout_id

    async def recover_rollout(self, rollout_id):
        """Rebuild a rollout from the ledger and carry on where it stopped"""
        if rollout_id in self._runs:
            raise RolloutStateError(f"rollout {rollout_id} is already running")
        rollout = self.ledger.replay_state(rollout_id)
        if rollout.state in TERMINAL_ROLLOUT_STATES:
            self.logger.info(f"Rollout {rollout_id} already finished ({rollout.state.value})")
            return rollout_id
        self.logger.info(f"Recovering rollout {rollout_id} in state {rollout.state.value}")
        self._spawn(rollout)
        return rollout_id

    def _spawn(self, rollout):
        run = _RolloutRun(rollout)
        if rollout.config.deadline_s:
            run.deadline = time.monotonic() + rollout.config.deadline_s
        self._runs[rollout.rollout_id] = run
        run.task = asyncio.create_task(self._drive(run))

    def _get_run(self, rollout_id):
        try:
            return self._runs[rollout_id]
        except KeyError:
            raise RolloutNotFoundError(rollout_id) from None

    def pause_rollout(self, rollout_id):
        """Ask the rollout to pause once its in-flight batches finish"""
        run = self._get_run(rollout_id)
        if run.rollout.state in TERMINAL_ROLLOUT_STATES:
            raise RolloutStateError(f"rollout {rollout_id} is {run.rollout.state.value}")
        run.pause_requested = True
        run.pause_reason = "paused by operator"
        self.logger.info(f"Pause requested for rollout {rollout_id}")

    def resume_rollout(self, rollout_id, decision=ResumeDecision.CONTINUE):
        run = self._get_run(rollout_id)
        decision = ResumeDecision(decision)
        rollout = run.rollout
        if rollout.state != RolloutState.PAUSED:
            raise RolloutStateError(f"rollout {rollout_id} is not paused ({rollout.state.value})")
        if decision != ResumeDecision.CONTINUE and rollout.paused_batch_id is None:
            raise RolloutStateError(f"rollout {rollout_id} has no failed batch to {decision.value}")
        run.settled.clear()
        run.decisions.put_nowait(decision)
        self.logger.info(f"Resume requested for rollout {rollout_id}: {decision.value}")

    def is_active(self, rollout_id):
        """True while this orchestrator is driving the rollout"""
        run = self._runs.get(rollout_id)
        return run is not None and not run.task.done()

    def cancel_rollout(self, rollout_id):
        run = self._get_run(rollout_id)
        run.token.cancel(f"rollout {rollout_id} cancelled by operator")
        self.logger.warning(f"Cancelling rollout {rollout_id}")

    def get_rollout_status(self, rollout_id):
        """Full view of the rollout, live if it is driven here, else replayed from the ledger"""
        if rollout_id in self._runs:
            return self._runs[rollout_id].rollout.to_dict()
        return self.ledger.replay_state(rollout_id).to_dict()

    async def wait_settled(self, rollout_id):
        """Wait until the rollout is paused or finished"""
        run = self._get_run(rollout_id)
        await run.settled.wait()
        return run.rollout.to_dict()

    async def wait_rollout(self, rollout_id):
        run = self._get_run(rollout_id)
        rollout = await run.task
        if rollout.state == RolloutState.ABORTED:
            raise RolloutAbortedError(rollout_id, run.abort_reason)
        return rollout

    def _set_state(self, run, state, diagnostic="", details=None):
        rollout = run.rollout
        rollout.state = state
        self.ledger.record(rollout, None, Phase.ROLLOUT, _ROLLOUT_OUTCOME[state], diagnostic,
                           state=state, details=details)

    def _deadline_passed(self, run):
        return run.deadline is not None and time.monotonic() >= run.deadline

    def _held(self, run):
        """True while no new batch may leave Pending"""
        return bool(run.aborted or run.token.cancelled or run.awaiting or run.unhandled
                    or run.pause_requested or self._deadline_passed(run))

    def _launch_delay(self, run, batch):
        """Seconds still to wait so batches are spaced by the inter-batch delay"""
        rollout = run.rollout
        ended = run.group_ended.get(batch.group)
        if ended is None and rollout.config.max_concurrent_batches == 1:
            ended = run.last_ended
        if ended is None or not rollout.config.inter_batch_delay_s:
            return 0
        return max(0, rollout.config.inter_batch_delay_s - (time.monotonic() - ended))

    async def _run_batch(self, run, batch, delay):
        if delay:
            self.logger.info(f"Waiting {delay:.1f} seconds before batch {batch.batch_id}...")
            try:
                if self._sleep is not None:
                    await self._sleep(delay)
                    run.token.raise_if_cancelled()
                else:
                    await run.token.sleep(delay)
            except RolloutCancelledError as e:
                self.logger.info(f"Batch {batch.batch_id} not started: {e}")
                return batch.state

        if self._held(run):
            self.logger.info(f"Batch {batch.batch_id} held back: rollout stopped dispatching")
            return batch.state

        try:
            state = await self.executor.run_batch(run.rollout, batch, run.token)
        except Exception as e:
            self.logger.exception(f"Batch {batch.batch_id} hit an unexpected error")
            state = self._fail_unexpectedly(run, batch, e)

        if state == BatchState.FAILED:
            run.unhandled.add(batch.batch_id)
        return state

    def _fail_unexpectedly(self, run, batch, error):
        phase = batch.next_phase()
        batch.state = BatchState.FAILED
        batch.failed_phase = phase
        batch.failure_reason = f"unexpected error in {phase.value if phase else 'batch'}: {error}"
        batch.ended_at = self.ledger.clock()
        run.crashed.add(batch.batch_id)
        self.ledger.record(run.rollout, batch, Phase.BATCH, Outcome.FAILURE, batch.failure_reason,
                           state=BatchState.FAILED, details={
                               "failed_phase": phase.value if phase else None,
                               "failed_targets": [],
                               "unexpected": True,
                           })
        return batch.state

    async def _handle_failure(self, run, batch):
        rollout = run.rollout
        if batch.batch_id in run.crashed:
            # Unclassified errors always wait for an operator
            run.crashed.discard(batch.batch_id)
            return Action.PAUSE_FOR_OPERATOR

        action = self.rollback.decide(rollout.policy, batch)
        if action == Action.ABORT:
            run.aborted = True
            if run.abort_reason is None:
                run.abort_reason = f"batch {batch.batch_id} failed: {batch.failure_reason}"
            # Leave nothing drained behind an aborted rollout
            if self.rollback.can_compensate(batch):
                await self.rollback.compensate(rollout, batch)
        elif action == Action.COMPENSATE_THEN_CONTINUE:
            await self.rollback.compensate(rollout, batch)
        return action

    async def _await_operator(self, run, batch, reason):
        """Park the rollout in Paused until a resume decision or cancellation"""
        rollout = run.rollout
        rollout.paused_batch_id = batch.batch_id if batch is not None else None
        if rollout.state != RolloutState.PAUSED:
            self._set_state(run, RolloutState.PAUSED, reason, details={"batch_id": rollout.paused_batch_id})
        self.logger.warning(f"Rollout {rollout.rollout_id} paused: {reason}")
        if run.decisions.empty():
            run.settled.set()

        getter = asyncio.ensure_future(run.decisions.get())
        cancelled = asyncio.ensure_future(run.token.wait())
        try:
            await asyncio.wait({getter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, cancelled):
                if not waiter.done():
                    waiter.cancel()

        if run.token.cancelled or not getter.done() or getter.cancelled():
            return None
        run.settled.clear()
        return getter.result()

    def _reset_for_retry(self, run, batch):
        batch.state = BatchState.PENDING
        batch.failure_reason = None
        batch.failed_phase = None
        batch.ended_at = None
        self.ledger.record(run.rollout, batch, Phase.BATCH, Outcome.STARTED, "retry requested by operator",
                           state=BatchState.PENDING)

    def _check_window(self, run):
        spec = run.rollout.config.maintenance_window
        if not spec:
            return
        window = MaintenanceWindow.parse(spec)
        now = self._now()
        if not window.contains(now):
            run.pause_requested = True
            run.pause_reason = f"outside maintenance window {window} (now {now:%a %H:%M})"

    async def _drive(self, run):
        try:
            return await self._dispatch(run)
        finally:
            run.settled.set()

    async def _dispatch(self, run):
        rollout = run.rollout
        limit = rollout.config.max_concurrent_batches
        pending = [b for b in rollout.batches if b.state not in TERMINAL_BATCH_STATES]
        running = {}
        busy = set()

        if rollout.state == RolloutState.PAUSED:
            # Recovered while waiting on an operator
            if rollout.paused_batch_id is not None:
                run.awaiting.append(rollout.batch(rollout.paused_batch_id))
            else:
                run.pause_requested = True
        else:
            if rollout.state == RolloutState.PLANNED:
                self._check_window(run)
            self._set_state(run, RolloutState.RUNNING)

        try:
            while True:
                if not self._held(run):
                    for batch in list(pending):
                        if len(running) >= limit:
                            break
                        if batch.group in busy:
                            continue
                        pending.remove(batch)
                        busy.add(batch.group)
                        delay = self._launch_delay(run, batch)
                        running[asyncio.create_task(self._run_batch(run, batch, delay))] = batch

                if running:
                    done, _ = await asyncio.wait(list(running), return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        batch = running.pop(task)
                        task.result()
                        if batch.state != BatchState.PENDING:
                            run.group_ended[batch.group] = run.last_ended = time.monotonic()
                        if batch.state == BatchState.FAILED:
                            action = await self._handle_failure(run, batch)
                            if action == Action.PAUSE_FOR_OPERATOR:
                                run.awaiting.append(batch)
                            run.unhandled.discard(batch.batch_id)
                        elif batch.state == BatchState.PENDING:
                            # Held back or cancelled before it started
                            pending.append(batch)
                            pending.sort(key=lambda b: b.index)
                        busy.discard(batch.group)
                    continue

                if run.aborted or run.token.cancelled:
                    break
                if run.awaiting or (pending and (run.pause_requested or self._deadline_passed(run))):
                    batch = run.awaiting.popleft() if run.awaiting else None
                    if batch is not None:
                        reason = f"batch {batch.batch_id} failed: {batch.failure_reason}"
                    elif run.pause_requested:
                        reason = run.pause_reason or "paused by operator"
                    else:
                        reason = "rollout deadline exceeded"

                    decision = await self._await_operator(run, batch, reason)
                    if decision is None:
                        break
                    run.pause_requested = False
                    run.pause_reason = None
                    run.deadline = None
                    if batch is not None:
                        if decision == ResumeDecision.RETRY:
                            self._reset_for_retry(run, batch)
                            pending.insert(0, batch)
                        elif self.rollback.can_compensate(batch):
                            await self.rollback.compensate(rollout, batch)
                    rollout.paused_batch_id = None
                    self._set_state(run, RolloutState.RUNNING, f"resumed: {decision.value}",
                                    details={"decision": decision.value})
                    continue
                break
        finally:
            for task in running:
                task.cancel()

        if run.token.cancelled:
            final = RolloutState.CANCELLED
        elif run.aborted:
            self.rollback.abort_pending(rollout, pending, run.abort_reason)
            final = RolloutState.ABORTED
        elif rollout.failed_batches():
            final = RolloutState.COMPLETED_WITH_FAILURES
        else:
            final = RolloutState.COMPLETED

        rollout.ended_at = self.ledger.clock()
        self._set_state(run, final, run.abort_reason or "")
        self.logger.info(f"Rollout {rollout.rollout_id} finished: {final.value} "
                         f"({len(rollout.failed_batches())} failed batches)")
        return rollout
