import time
import uuid
from dataclasses import replace
from .models import Batch, BatchConfig, FailurePolicy, Rollout, Target, TargetState
from .errors import InvalidPlanError
from .window import MaintenanceWindow
from .logger import get_logger

logger = get_logger("planner")


def _default_group(target):
    return target.group


def split_batches(target_ids, max_batch_size):
    """Split an ordered list of target ids into chunks of at most max_batch_size"""
    if max_batch_size < 1:
        raise InvalidPlanError("max_batch_size must be >= 1")

    ids = list(target_ids)
    return [ids[i:i + max_batch_size] for i in range(0, len(ids), max_batch_size)]


def validate_config(config):
    """Reject settings that would only fail once targets are already drained"""
    if config.max_batch_size < 1:
        raise InvalidPlanError("max_batch_size must be >= 1")
    if config.max_concurrent_batches < 1:
        raise InvalidPlanError("max_concurrent_batches must be >= 1")
    if not 0 < config.min_ready_fraction <= 1:
        raise InvalidPlanError("min_ready_fraction must be in (0, 1]")
    if config.health_poll_interval_s <= 0:
        raise InvalidPlanError("health_poll_interval_s must be > 0")

    for name in ("retry_max_attempts", "retry_base_delay_s", "retry_max_delay_s", "inter_batch_delay_s",
                 "stabilization_window_s", "health_timeout_s", "max_health_resets"):
        if getattr(config, name) < 0:
            raise InvalidPlanError(f"{name} must be >= 0")
    for name in ("phase_timeout_s", "deadline_s"):
        value = getattr(config, name)
        if value is not None and value < 0:
            raise InvalidPlanError(f"{name} must be >= 0")

    if config.maintenance_window:
        try:
            MaintenanceWindow.parse(config.maintenance_window)
        except ValueError as e:
            raise InvalidPlanError(str(e)) from e


def _ordered_groups(grouped, group_order):
    """Groups named in group_order first, then the rest in declaration order"""
    ordered = []
    for key in group_order or ():
        if key in grouped and key not in ordered:
            ordered.append(key)
    for key in grouped:
        if key not in ordered:
            ordered.append(key)
    return ordered


def plan(targets, group_by=None, max_batch_size=None, max_concurrent_batches=None,
         group_order=None, policy=FailurePolicy.BEST_EFFORT, config=None,
         op_spec=None, rollout_id=None):
    """Partition targets into ordered, non-overlapping batches.

    Targets are grouped by ``group_by`` (the target's group tag by default),
    groups are ordered by ``group_order`` and then by first appearance, and
    each group is split into batches of at most ``max_batch_size`` after a
    stable sort on target id. Planning has no side effects, so planning the
    same input twice yields identical batches.
    """
    config = config or BatchConfig()
    if max_batch_size is not None:
        config = replace(config, max_batch_size=max_batch_size)
    if max_concurrent_batches is not None:
        config = replace(config, max_concurrent_batches=max_concurrent_batches)

    targets = list(targets)
    if not targets:
        raise InvalidPlanError("no targets to plan")
    validate_config(config)

    group_by = group_by or _default_group
    by_id = {}
    grouped = {}
    for target in targets:
        if isinstance(target, Target):
            # The rollout owns its own copy of every target
            target = replace(target, state=TargetState.PENDING, retry_count=0)
        else:
            target = Target(target_id=str(target))
        if target.target_id in by_id:
            raise InvalidPlanError(f"target {target.target_id} appears more than once")
        by_id[target.target_id] = target
        grouped.setdefault(group_by(target), []).append(target.target_id)

    batches = []
    for key in _ordered_groups(grouped, group_order):
        group = str(key)
        for n, chunk in enumerate(split_batches(sorted(grouped[key]), config.max_batch_size), start=1):
            batches.append(Batch(
                index=len(batches) + 1,
                batch_id=f"{group}-{n}",
                group=group,
                target_ids=chunk,
            ))

    rollout = Rollout(
        rollout_id=rollout_id or uuid.uuid4().hex[:12],
        batches=batches,
        targets=by_id,
        policy=FailurePolicy(policy),
        config=config,
        op_spec=op_spec,
        created_at=time.time(),
    )
    logger.info(f"Planned rollout {rollout.rollout_id}: {len(by_id)} targets in "
                f"{len(batches)} batches across {len(grouped)} groups")
    return rollout
