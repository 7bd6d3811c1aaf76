import asyncio
from .models import (
    ACTIVE_STATE, CALLBACK_PHASES, REACHED_STATE, BatchState, Health, Outcome, Phase,
)
from .errors import (
    PERMANENT, HealthTimeoutError, RolloutCancelledError, classify_error,
)
from .health import HealthGate
from .logger import get_logger

# Phases whose action must be confirmed by the health gate before moving on
GATED_PHASES = (Phase.OPERATE, Phase.VERIFY, Phase.RESTORE)


class PhaseFailure(Exception):
    """A phase exhausted its retries, hit a permanent error or failed its gate"""

    def __init__(self, phase, outcome, diagnostic, failed_targets=()):
        super().__init__(diagnostic)
        self.phase = phase
        self.outcome = outcome
        self.diagnostic = diagnostic
        self.failed_targets = list(failed_targets)


class PhaseExecutor:
    def __init__(self, cluster, ledger, health_gate=None, sleep=None):
        self.cluster = cluster
        self.ledger = ledger
        self.health_gate = health_gate
        self._sleep = sleep
        self.logger = get_logger("executor")

    def _action(self, phase, op_spec):
        if phase == Phase.DRAIN:
            return self.cluster.drain_target
        if phase == Phase.OPERATE:
            return lambda target: self.cluster.apply_operation(target, op_spec)
        if phase == Phase.VERIFY:
            return self.cluster.verify_target
        if phase == Phase.RESTORE:
            return self.cluster.restore_target
        raise ValueError(f"no action for phase {phase}")

    def _gate(self, config):
        if self.health_gate is not None:
            return self.health_gate
        return HealthGate(
            self.cluster.readiness_probe,
            poll_interval_s=config.health_poll_interval_s,
            max_resets=config.max_health_resets,
            sleep=self._sleep,
        )

    async def _pause(self, delay, token):
        if self._sleep is not None:
            await self._sleep(delay)
            token.raise_if_cancelled()
        else:
            await token.sleep(delay)

    async def _invoke(self, action, target, timeout_s):
        """Run one callback, returning the raised error instead of propagating it"""
        try:
            if timeout_s and timeout_s > 0:
                await asyncio.wait_for(action(target), timeout=timeout_s)
            else:
                await action(target)
            return None
        except Exception as e:
            return e

    @staticmethod
    def _describe(error, timeout_s):
        if isinstance(error, asyncio.TimeoutError):
            return f"timed out after {timeout_s}s"
        return str(error) or error.__class__.__name__

    async def run_batch(self, rollout, batch, token):
        """Drive a batch through its remaining phases.

        The batch starts at the first phase it has not completed, so the same
        call resumes a batch after an operator retry or an orchestrator
        restart. Returns the batch state reached.
        """
        targets = rollout.batch_targets(batch)
        if batch.started_at is None:
            batch.started_at = self.ledger.clock()

        phase = batch.next_phase()
        self.logger.info(f"Starting batch {batch.index}/{len(rollout.batches)} ({batch.batch_id}) "
                         f"with {len(targets)} targets at {phase.value if phase else 'end'}")
        try:
            while phase is not None:
                await self._run_phase(rollout, batch, phase, targets, token)
                batch.completed_phases.append(phase)
                phase = batch.next_phase()
        except RolloutCancelledError as e:
            self.logger.warning(f"Batch {batch.batch_id} cancelled: {e}")
            self._finish(rollout, batch, BatchState.CANCELLED, Outcome.CANCELLED, str(e))
            return batch.state
        except PhaseFailure as failure:
            batch.failed_phase = failure.phase
            batch.failure_reason = failure.diagnostic
            for tid in failure.failed_targets:
                rollout.targets[tid].health = Health.FAILED
            self.logger.error(f"Batch {batch.batch_id} failed in {failure.phase.value}: {failure.diagnostic}")
            self._finish(rollout, batch, BatchState.FAILED, Outcome.FAILURE, failure.diagnostic, {
                "failed_phase": failure.phase.value,
                "failed_targets": failure.failed_targets,
            })
            return batch.state

        self.logger.info(f"Batch {batch.batch_id} completed")
        self._finish(rollout, batch, BatchState.COMPLETED, Outcome.SUCCESS)
        return batch.state

    def _finish(self, rollout, batch, state, outcome, diagnostic="", details=None):
        batch.state = state
        batch.ended_at = self.ledger.clock()
        self.ledger.record(rollout, batch, Phase.BATCH, outcome, diagnostic, state=state, details=details)

    async def _run_phase(self, rollout, batch, phase, targets, token):
        config = rollout.config
        action = self._action(phase, rollout.op_spec)
        state = ACTIVE_STATE[phase]
        batch.state = state
        max_attempts = max(1, config.retry_max_attempts)
        pending = list(targets)
        completed = []
        attempt = 0

        try:
            for attempt in range(1, max_attempts + 1):
                token.raise_if_cancelled()
                self.ledger.record(rollout, batch, phase, Outcome.STARTED, attempt=attempt, state=state,
                                   details={"targets": [t.target_id for t in pending]})

                errors = await asyncio.gather(*(self._invoke(action, t, config.phase_timeout_s) for t in pending))
                failed = []
                for target, error in zip(pending, errors):
                    if error is not None:
                        failed.append((target, error))
                    elif phase in CALLBACK_PHASES:
                        # Physically done even if the phase as a whole is not
                        target.state = REACHED_STATE[phase]
                        completed.append(target.target_id)
                if not failed:
                    break

                permanent = any(classify_error(e) == PERMANENT for _, e in failed)
                timed_out = all(isinstance(e, asyncio.TimeoutError) for _, e in failed)
                outcome = Outcome.TIMED_OUT if timed_out else Outcome.FAILURE
                diagnostic = "; ".join(f"{t.target_id}: {self._describe(e, config.phase_timeout_s)}" for t, e in failed)
                failed_ids = [t.target_id for t, _ in failed]
                self.ledger.record(rollout, batch, phase, outcome, diagnostic, attempt=attempt, state=state,
                                   details={"failed_targets": failed_ids, "permanent": permanent,
                                            "completed_targets": list(completed)})
                self.logger.warning(f"{phase.value} attempt {attempt}/{max_attempts} failed for "
                                    f"{len(failed)} targets in {batch.batch_id}: {diagnostic}")

                if permanent or attempt >= max_attempts:
                    raise PhaseFailure(phase, outcome, diagnostic, failed_ids)

                # Only the failing targets are retried
                pending = []
                for target, _ in failed:
                    target.retry_count += 1
                    target.health = Health.DEGRADED
                    pending.append(target)

                backoff = min(config.retry_base_delay_s * (2 ** (attempt - 1)), config.retry_max_delay_s)
                self.logger.info(f"Retrying {phase.value} in {backoff} seconds...")
                await self._pause(backoff, token)

            # Callbacks have returned; safe point to stop
            token.raise_if_cancelled()

            details = {}
            diagnostic = ""
            if phase in GATED_PHASES:
                try:
                    snapshot = await self._gate(config).evaluate(
                        targets,
                        config.min_ready_fraction,
                        config.stabilization_window_s,
                        config.health_timeout_s,
                        token=token,
                    )
                except HealthTimeoutError as e:
                    diagnostic = f"health gate: {e}"
                    self.ledger.record(rollout, batch, phase, Outcome.TIMED_OUT, diagnostic,
                                       attempt=attempt, state=state)
                    raise PhaseFailure(phase, Outcome.TIMED_OUT, diagnostic)
                details = {
                    "ready": snapshot.ready_count,
                    "total": snapshot.total_count,
                    "degraded": snapshot.degraded,
                    "resets": snapshot.resets,
                }
                diagnostic = f"health gate passed: {snapshot.ready_count}/{snapshot.total_count} ready"

            for target in targets:
                target.state = REACHED_STATE[phase]
                target.health = Health.HEALTHY
            self.ledger.record(rollout, batch, phase, Outcome.SUCCESS, diagnostic, attempt=attempt,
                               state=state, details=details)
        except RolloutCancelledError as e:
            self.ledger.record(rollout, batch, phase, Outcome.CANCELLED, str(e), attempt=attempt, state=state,
                               details={"completed_targets": completed})
            raise
