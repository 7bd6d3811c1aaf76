import asyncio
import json
import pytest
from fleet_rollout.models import Target
from fleet_rollout.kubectl import KubectlCluster
from fleet_rollout.errors import PermanentError, TransientError


class FakeProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self):
        return self._stdout, self._stderr


@pytest.fixture
def commands(monkeypatch):
    """Capture subprocess invocations; set ``commands.result`` to script the reply"""

    class Recorder(list):
        result = FakeProcess()

    recorder = Recorder()

    async def fake_exec(*cmd, **kwargs):
        recorder.append(list(cmd))
        if isinstance(recorder.result, Exception):
            raise recorder.result
        return recorder.result

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return recorder


class TestKubectlCommands:
    """Command construction."""

    @pytest.mark.asyncio
    async def test_drain_command(self, commands):
        await KubectlCluster(context="prod").drain_target(Target("node-1"))

        assert commands[0] == [
            "kubectl", "drain", "node-1", "--ignore-daemonsets", "--delete-emptydir-data",
            "--force", "--grace-period=300", "--context", "prod",
        ]

    @pytest.mark.asyncio
    async def test_restore_uncordons(self, commands):
        await KubectlCluster(kubeconfig="/tmp/kc").restore_target(Target("node-1"))

        assert commands[0] == ["kubectl", "uncordon", "node-1", "--kubeconfig", "/tmp/kc"]

    def test_command_template(self):
        cmd = KubectlCluster().operation_command(Target("node-1"), {"command": ["patch.sh", "--host={target}"]})
        assert cmd == ["patch.sh", "--host=node-1"]

    def test_playbook_command(self):
        op_spec = {
            "playbook": "os_patching.yml",
            "inventory": "hosts.yml",
            "tags": "os_patching",
            "extra_vars": {"reboot": "true"},
        }
        cmd = KubectlCluster().operation_command(Target("node-1"), op_spec)
        assert cmd == [
            "ansible-playbook", "-i", "hosts.yml", "os_patching.yml", "--limit", "node-1",
            "--tags", "os_patching", "--extra-vars", "reboot=true",
        ]

    def test_missing_operation_rejected(self):
        with pytest.raises(PermanentError):
            KubectlCluster().operation_command(Target("node-1"), None)

    @pytest.mark.asyncio
    async def test_readiness_probe(self, commands):
        commands.result = FakeProcess(stdout=b"True")
        snapshot = await KubectlCluster().readiness_probe(Target("node-1"))
        assert (snapshot.ready_count, snapshot.total_count) == (1, 1)

        commands.result = FakeProcess(stdout=b"False")
        snapshot = await KubectlCluster().readiness_probe(Target("node-1"))
        assert snapshot.ready_count == 0


class TestDiscovery:
    """Finding targets by label selector."""

    @pytest.mark.asyncio
    async def test_discover_groups_by_production_line(self, commands):
        nodes = {"items": [
            {"metadata": {"name": "worker-1", "labels": {"production-line": "A", "role": "worker"}}},
            {"metadata": {"name": "worker-2", "labels": {"production-line": "B", "role": "worker"}}},
            {"metadata": {"name": "worker-3", "labels": {"role": "worker"}}},
        ]}
        commands.result = FakeProcess(stdout=json.dumps(nodes).encode())

        targets = await KubectlCluster(context="prod").discover_targets("role=worker")

        assert commands[0] == ["kubectl", "get", "nodes", "-l", "role=worker", "-o", "json",
                               "--context", "prod"]
        assert [(t.target_id, t.group) for t in targets] == [
            ("worker-1", "A"), ("worker-2", "B"), ("worker-3", "default"),
        ]
        assert targets[0].labels == {"production-line": "A", "role": "worker"}

    @pytest.mark.asyncio
    async def test_discover_custom_group_label(self, commands):
        nodes = {"items": [{"metadata": {"name": "n1", "labels": {"zone": "east"}}}]}
        commands.result = FakeProcess(stdout=json.dumps(nodes).encode())

        targets = await KubectlCluster().discover_targets("zone", group_label="zone")

        assert targets == [Target("n1", "east", labels={"zone": "east"})]

    @pytest.mark.asyncio
    async def test_discover_unreadable_output(self, commands):
        commands.result = FakeProcess(stdout=b"not json")
        with pytest.raises(PermanentError, match="unreadable node list"):
            await KubectlCluster().discover_targets("role=worker")


class TestKubectlErrors:
    """Error classification."""

    @pytest.mark.asyncio
    async def test_not_found_is_permanent(self, commands):
        commands.result = FakeProcess(1, stderr=b'Error from server (NotFound): nodes "node-9" not found')
        with pytest.raises(PermanentError, match="exited 1"):
            await KubectlCluster().drain_target(Target("node-9"))

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, commands):
        commands.result = FakeProcess(1, stderr=b"The connection to the server was refused")
        with pytest.raises(TransientError):
            await KubectlCluster().drain_target(Target("node-1"))

    @pytest.mark.asyncio
    async def test_missing_binary_is_permanent(self, commands):
        commands.result = FileNotFoundError("kubectl")
        with pytest.raises(PermanentError, match="not available"):
            await KubectlCluster().restore_target(Target("node-1"))
