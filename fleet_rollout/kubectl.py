import asyncio
import json
import time
from .cluster import ClusterActions
from .models import HealthSnapshot, Target
from .errors import PermanentError, TransientError
from .logger import get_logger

# stderr fragments meaning the node (or the request) will not get better by retrying
_PERMANENT_MARKERS = ("NotFound", "not found", "forbidden", "Forbidden", "unknown flag", "invalid")


class KubectlCluster(ClusterActions):
    """Cluster actions backed by kubectl, with ansible-playbook for the Operate phase.

    ``op_spec`` for ``apply_operation`` is either ``{"command": [...]}``, a
    command template where ``{target}`` is replaced by the node name, or a
    playbook description ``{"playbook": ..., "inventory": ..., "tags": ...,
    "extra_vars": {...}}`` run with ``--limit`` set to the node.
    """

    def __init__(self, kubectl="kubectl", ansible_playbook="ansible-playbook", context=None,
                 kubeconfig=None, grace_period=300, command_timeout_s=None):
        self.kubectl = kubectl
        self.ansible_playbook = ansible_playbook
        self.context = context
        self.kubeconfig = kubeconfig
        self.grace_period = grace_period
        self.command_timeout_s = command_timeout_s
        self.logger = get_logger("kubectl")

    def _kubectl(self, *args):
        cmd = [self.kubectl, *args]
        if self.context:
            cmd += ["--context", self.context]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        return cmd

    async def run_command(self, cmd):
        """Run a command, returning stdout or raising a classified error"""
        self.logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"{cmd[0]} not available: {e}") from e

        try:
            if self.command_timeout_s:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout_s)
            else:
                stdout, stderr = await proc.communicate()
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransientError(f"{cmd[0]} timed out after {self.command_timeout_s}s")

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()
        if proc.returncode != 0:
            message = f"{' '.join(cmd[:3])} exited {proc.returncode}: {err or out}"
            if any(marker in err for marker in _PERMANENT_MARKERS):
                raise PermanentError(message)
            raise TransientError(message)
        if err:
            self.logger.debug(f"Command stderr: {err}")
        return out

    async def drain_target(self, target):
        await self.run_command(self._kubectl(
            "drain", target.target_id,
            "--ignore-daemonsets",
            "--delete-emptydir-data",
            "--force",
            f"--grace-period={self.grace_period}",
        ))
        self.logger.info(f"Drained {target.target_id}")

    async def restore_target(self, target):
        await self.run_command(self._kubectl("uncordon", target.target_id))
        self.logger.info(f"Uncordoned {target.target_id}")

    def operation_command(self, target, op_spec):
        op_spec = op_spec or {}
        if "command" in op_spec:
            return [part.replace("{target}", target.target_id) for part in op_spec["command"]]
        if "playbook" in op_spec:
            cmd = [self.ansible_playbook]
            if op_spec.get("inventory"):
                cmd += ["-i", op_spec["inventory"]]
            cmd += [op_spec["playbook"], "--limit", target.target_id]
            if op_spec.get("tags"):
                cmd += ["--tags", op_spec["tags"]]
            for key, value in (op_spec.get("extra_vars") or {}).items():
                cmd += ["--extra-vars", f"{key}={value}"]
            return cmd
        raise PermanentError("op_spec needs either 'command' or 'playbook'")

    async def apply_operation(self, target, op_spec):
        await self.run_command(self.operation_command(target, op_spec))

    async def readiness_probe(self, target):
        out = await self.run_command(self._kubectl(
            "get", "node", target.target_id,
            "-o", 'jsonpath={.status.conditions[?(@.type=="Ready")].status}',
        ))
        ready = 1 if out.strip() == "True" else 0
        return HealthSnapshot(ready_count=ready, total_count=1, sampled_at=time.time())

    async def discover_targets(self, selector, group_label="production-line"):
        """Nodes matching a label selector, grouped by the value of ``group_label``"""
        out = await self.run_command(self._kubectl("get", "nodes", "-l", selector, "-o", "json"))
        try:
            items = json.loads(out or "{}").get("items", [])
        except ValueError as e:
            raise PermanentError(f"unreadable node list: {e}") from e
        targets = []
        for item in items:
            metadata = item.get("metadata", {})
            labels = metadata.get("labels") or {}
            targets.append(Target(
                target_id=metadata["name"],
                group=labels.get(group_label, "default"),
                labels=dict(labels),
            ))
        self.logger.info(f"Discovered {len(targets)} nodes matching {selector}")
        return targets

    def notify_progress(self, record):
        self.logger.debug(f"{record.rollout_id} {record.batch_id or '-'} {record.phase.value} {record.outcome.value}")
