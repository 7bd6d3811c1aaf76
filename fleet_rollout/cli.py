import argparse
import json
import asyncio
import sys
from dataclasses import asdict, replace
from .models import BatchConfig, FailurePolicy, ResumeDecision, RolloutState, Target
from .errors import InvalidPlanError, RolloutNotFoundError, RolloutStateError
from .cluster import SimulatedCluster
from .kubectl import KubectlCluster
from .ledger import ProgressLedger
from .orchestrator import RolloutOrchestrator
from .planner import plan
from .logger import setup_logging, get_logger

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID = 2
EXIT_PAUSED = 3
EXIT_ABORTED = 4
EXIT_NOT_FOUND = 5

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def load_targets(path):
    """Read targets from a JSON list of ids or {"target_id", "group", "labels"} objects"""
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        targets = []
        for t in data:
            if isinstance(t, str):
                targets.append(Target(target_id=t))
                continue
            targets.append(Target(
                target_id=t["target_id"],
                group=t.get("group", "default"),
                labels=t.get("labels", {}),
            ))
        return targets
    except Exception as e:
        logger.error(f"Error loading targets: {e}")
        raise


def load_config(path=None, **overrides):
    """BatchConfig from an optional JSON file, with non-None overrides applied"""
    config = BatchConfig()
    if path:
        with open(path) as f:
            config = BatchConfig(**json.load(f))
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(config, **overrides)


def build_cluster(args):
    if args.simulate:
        return SimulatedCluster()
    return KubectlCluster(context=args.context, kubeconfig=args.kubeconfig)


def exit_code_for(state):
    return {
        RolloutState.COMPLETED: EXIT_OK,
        RolloutState.PAUSED: EXIT_PAUSED,
        RolloutState.ABORTED: EXIT_ABORTED,
    }.get(RolloutState(state), EXIT_ERROR)


async def load_fleet(args):
    """Targets from --targets, or discovered from the cluster with --selector"""
    if args.targets:
        return load_targets(args.targets)
    cluster = KubectlCluster(context=args.context, kubeconfig=args.kubeconfig)
    return await cluster.discover_targets(args.selector, group_label=args.group_label)


def _add_kube_args(parser):
    parser.add_argument("--context", help="kubectl context")
    parser.add_argument("--kubeconfig")


def _add_cluster_args(parser):
    parser.add_argument("--ledger", required=True, help="JSON-lines progress ledger")
    parser.add_argument("--simulate", action="store_true", help="Use an in-memory cluster")


def _add_plan_args(parser):
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--targets", help="JSON file listing the targets")
    source.add_argument("--selector", help="kubectl label selector, e.g. role=worker")
    parser.add_argument("--group-label", default="production-line",
                        help="Node label used as the group of discovered targets")
    parser.add_argument("--config", help="JSON file with BatchConfig fields")
    parser.add_argument("--batch-size", type=int)
    parser.add_argument("--max-concurrent", type=int)
    parser.add_argument("--group-order", help="Comma separated group priority, e.g. A,B,C,D")


def build_parser():
    parser = argparse.ArgumentParser(prog="fleet-rollout", description="Fleet rollout orchestrator")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    plan_cmd = sub.add_parser("plan", help="Print the batches a rollout would use")
    _add_plan_args(plan_cmd)
    _add_kube_args(plan_cmd)

    run = sub.add_parser("run", help="Plan and run a rollout")
    _add_plan_args(run)
    _add_cluster_args(run)
    _add_kube_args(run)
    run.add_argument("--policy", default=FailurePolicy.BEST_EFFORT.value,
                     choices=[p.value for p in FailurePolicy])
    run.add_argument("--op-spec", help="JSON file describing the Operate action")
    run.add_argument("--rollout-id")
    run.add_argument("--inter-batch-delay", type=float)

    status = sub.add_parser("status", help="Rebuild a rollout's state from the ledger")
    status.add_argument("--ledger", required=True)
    status.add_argument("--rollout-id", required=True)

    resume = sub.add_parser("resume", help="Resume an interrupted or paused rollout")
    _add_cluster_args(resume)
    _add_kube_args(resume)
    resume.add_argument("--rollout-id", required=True)
    resume.add_argument("--decision", choices=[d.value for d in ResumeDecision])

    return parser


async def _run(orchestrator, targets, args, config, op_spec):
    group_order = args.group_order.split(",") if args.group_order else None
    rollout_id = await orchestrator.start_rollout(
        targets, policy=args.policy, config=config, op_spec=op_spec,
        group_order=group_order, rollout_id=args.rollout_id,
    )
    return await orchestrator.wait_settled(rollout_id)


async def _resume(orchestrator, args):
    rollout_id = await orchestrator.recover_rollout(args.rollout_id)
    if not orchestrator.is_active(rollout_id):
        return orchestrator.get_rollout_status(rollout_id)

    status = orchestrator.get_rollout_status(rollout_id)
    if status["state"] == RolloutState.PAUSED:
        if not args.decision:
            return status
        orchestrator.resume_rollout(rollout_id, args.decision)
    return await orchestrator.wait_settled(rollout_id)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.cmd == "plan":
        try:
            config = load_config(args.config, max_batch_size=args.batch_size,
                                 max_concurrent_batches=args.max_concurrent)
            group_order = args.group_order.split(",") if args.group_order else None
            rollout = plan(asyncio.run(load_fleet(args)), group_order=group_order, config=config)
        except InvalidPlanError as e:
            print(f"Invalid plan: {e}")
            sys.exit(EXIT_INVALID)
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(EXIT_ERROR)
        print(json.dumps([asdict(b) for b in rollout.batches], indent=2))
        return

    if args.cmd == "status":
        try:
            status = ProgressLedger.load(args.ledger).replay_state(args.rollout_id).to_dict()
        except RolloutNotFoundError as e:
            print(f"Error: {e}")
            sys.exit(EXIT_NOT_FOUND)
        print(json.dumps(status, indent=2))
        return

    if args.cmd == "run":
        try:
            targets = asyncio.run(load_fleet(args))
            config = load_config(args.config, max_batch_size=args.batch_size,
                                 max_concurrent_batches=args.max_concurrent,
                                 inter_batch_delay_s=args.inter_batch_delay)
            op_spec = None
            if args.op_spec:
                with open(args.op_spec) as f:
                    op_spec = json.load(f)
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(EXIT_ERROR)

        ledger = ProgressLedger.load(args.ledger)
        orchestrator = RolloutOrchestrator(build_cluster(args), ledger=ledger)
        try:
            status = asyncio.run(_run(orchestrator, targets, args, config, op_spec))
        except InvalidPlanError as e:
            print(f"Invalid plan: {e}")
            sys.exit(EXIT_INVALID)
        finally:
            ledger.close()
        print(json.dumps(status, indent=2))
        sys.exit(exit_code_for(status["state"]))

    if args.cmd == "resume":
        ledger = ProgressLedger.load(args.ledger)
        orchestrator = RolloutOrchestrator(build_cluster(args), ledger=ledger)
        try:
            status = asyncio.run(_resume(orchestrator, args))
        except RolloutNotFoundError as e:
            print(f"Error: {e}")
            sys.exit(EXIT_NOT_FOUND)
        except RolloutStateError as e:
            print(f"Error: {e}")
            sys.exit(EXIT_ERROR)
        finally:
            ledger.close()
        print(json.dumps(status, indent=2))
        sys.exit(exit_code_for(status["state"]))


if __name__ == "__main__":
    main()
