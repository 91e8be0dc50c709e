"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings
from rich.console import Console

from kata_manager.config import (
    KATA_CLEANUP_NAME,
    KATA_DEPLOY_NAME,
    KATA_LABEL_KEY,
    KATA_LABEL_VALUE,
    KataSettings,
)
from kata_manager.models.node import ClusterNode, DaemonSetStatus, PodState
from kata_manager.remote import CommandOutput
from kata_manager.reporting import Reporter

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


class FakeClock:
    """Clock that only advances when slept on."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedConfirmer:
    """Answers prompts from a fixed list and records them."""

    def __init__(self, *answers: bool):
        self.answers = list(answers)
        self.prompts: list[tuple[str, bool]] = []

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.prompts.append((prompt, default))
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        return self.answers.pop(0)


class FakeTransport:
    """Transport returning canned output per command."""

    def __init__(self, responses: dict | None = None, default: CommandOutput | None = None):
        self.responses = responses or {}
        self.default = default or CommandOutput(exit_status=0, stdout="")
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def execute(self, host: str, command: str) -> CommandOutput:
        self.calls.append((host, command))
        for fragment, output in self.responses.items():
            if fragment in command:
                if isinstance(output, Exception):
                    raise output
                return output
        return self.default

    def close(self) -> None:
        self.closed = True


class FakeKube:
    """In-memory cluster standing in for KubeClient.

    ``behaviour`` maps node names to how their kata-deploy pod behaves once the
    node is labeled: ``ready`` (default), ``pending`` or ``crash``.
    """

    def __init__(self, nodes: list[ClusterNode], behaviour: dict[str, str] | None = None):
        self.nodes = {n.name: n.model_copy(deep=True) for n in nodes}
        self.behaviour = behaviour or {}
        self.unhealthy: dict[str, list[int]] = {}
        self.deployed: set[str] = set()
        self.runtime_classes: list[tuple[str, str]] = []
        self.pods: dict[tuple[str, str], PodState] = {}
        self.logs: dict[str, str] = {}
        self.mutations: list[tuple] = []
        self.dry_run_applies: list[str] = []
        self.fail_unlabel: set[str] = set()
        self.canary_node: str | None = None
        self.canary_phase = "Succeeded"

    # cluster / nodes

    def ensure_reachable(self) -> str:
        return "v1.31.4+k3s1"

    def list_nodes(self, label_selector: str | None = None) -> list[ClusterNode]:
        nodes = [n.model_copy(deep=True) for n in self.nodes.values()]
        if label_selector == f"{KATA_LABEL_KEY}={KATA_LABEL_VALUE}":
            nodes = [n for n in nodes if n.kata_enabled]
        return nodes

    def list_worker_nodes(self) -> list[ClusterNode]:
        return [n for n in self.list_nodes() if not n.is_control_plane]

    def label_node(self, name: str, key: str = KATA_LABEL_KEY, value: str = KATA_LABEL_VALUE):
        self.mutations.append(("label", name))
        node = self.nodes[name]
        node.labels[key] = value
        node.kata_enabled = True

    def unlabel_node(self, name: str, key: str = KATA_LABEL_KEY):
        if name in self.fail_unlabel:
            from kata_manager.exceptions import KubernetesError

            raise KubernetesError(f"Failed to unlabel node {name}")
        self.mutations.append(("unlabel", name))
        node = self.nodes[name]
        node.labels.pop(key, None)
        node.kata_enabled = False

    def labeled(self) -> list[str]:
        return [n.name for n in self.nodes.values() if n.kata_enabled]

    # workloads

    def _installer_pod(self, node: ClusterNode) -> PodState:
        mode = self.behaviour.get(node.name, "ready")
        return PodState(
            name=f"kata-deploy-{node.name}",
            namespace="kube-system",
            node_name=node.name,
            phase="Running" if mode != "crash" else "Pending",
            ready=mode == "ready",
            waiting_reasons=["CrashLoopBackOff"] if mode == "crash" else [],
        )

    def daemonset_status(self, name: str) -> DaemonSetStatus | None:
        if name not in self.deployed:
            return None
        labeled = [n for n in self.nodes.values() if n.kata_enabled]
        ready = sum(1 for n in labeled if self._installer_pod(n).ready)
        return DaemonSetStatus(name=name, desired=len(labeled), ready=ready)

    def list_pods(self, label_selector=None, node_name=None, namespace=None) -> list[PodState]:
        if KATA_DEPLOY_NAME not in self.deployed:
            return []
        pods = [self._installer_pod(n) for n in self.nodes.values() if n.kata_enabled]
        if node_name:
            pods = [p for p in pods if p.node_name == node_name]
        return pods

    def count_unhealthy_pods(self, node_name: str) -> int:
        counts = self.unhealthy.get(node_name)
        if not counts:
            return 0
        return counts.pop(0) if len(counts) > 1 else counts[0]

    def get_pod(self, name: str, namespace: str) -> PodState | None:
        return self.pods.get((namespace, name))

    def delete_pod(self, name: str, namespace: str) -> bool:
        self.mutations.append(("delete-pod", name))
        return self.pods.pop((namespace, name), None) is not None

    def pod_logs(self, name: str, namespace: str, tail_lines: int | None = None) -> str:
        return self.logs.get(name, "")

    def stream_pod_logs(self, name: str, namespace: str):
        yield from self.logs.get(name, "").splitlines()

    def list_runtime_classes(self) -> list[tuple[str, str]]:
        return list(self.runtime_classes)

    def delete_daemonset(self, name: str) -> bool:
        self.mutations.append(("delete-daemonset", name))
        present = name in self.deployed
        self.deployed.discard(name)
        return present

    def delete_cluster_role_binding(self, name: str) -> bool:
        self.mutations.append(("delete-clusterrolebinding", name))
        return True

    def delete_cluster_role(self, name: str) -> bool:
        self.mutations.append(("delete-clusterrole", name))
        return True

    def delete_service_account(self, name: str) -> bool:
        self.mutations.append(("delete-serviceaccount", name))
        return True

    def apply_manifest(self, path, dry_run: bool = False) -> str:
        name = path.name
        if dry_run:
            self.dry_run_applies.append(name)
            return ""
        self.mutations.append(("apply", name))
        if name.startswith("kata-runtimeclass"):
            self.runtime_classes = [("kata", "kata-qemu"), ("kata-qemu", "kata-qemu"), ("kata-clh", "kata-clh")]
        elif name.startswith("kata-deploy"):
            self.deployed.add(KATA_DEPLOY_NAME)
        elif name.startswith("kata-cleanup"):
            self.deployed.add(KATA_CLEANUP_NAME)
        elif name.startswith("test-pod"):
            first = next(iter(self.nodes), None)
            self.pods[("default", "kata-test")] = PodState(
                name="kata-test",
                namespace="default",
                node_name=self.canary_node or first,
                phase=self.canary_phase,
            )
        return ""

    def delete_manifest(self, path, dry_run: bool = False) -> str:
        if dry_run:
            self.dry_run_applies.append(path.name)
            return ""
        self.mutations.append(("delete-manifest", path.name))
        if path.name.startswith("kata-runtimeclass"):
            self.runtime_classes = []
        return ""

    def describe_daemonset(self, name: str) -> str:
        return f"Name: {name}"

    def run_interactive(self, args: list[str]) -> int:
        self.mutations.append(("interactive", tuple(args)))
        return 0


def make_node(name: str, address: str | None = None, **kwargs) -> ClusterNode:
    return ClusterNode(name=name, address=address, **kwargs)


@pytest.fixture
def kata_settings():
    """Settings isolated from the developer's environment and .env file."""
    return KataSettings(_env_file=None, worker_nodes="", dry_run=False, poll_interval=10)


@pytest.fixture
def reporter():
    """Reporter writing to an in-memory console."""
    return Reporter(Console(record=True, width=200, force_terminal=False))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def three_workers():
    return [
        make_node("w1", "10.0.0.11", kernel_version="5.15.0-91-generic"),
        make_node("w2", "10.0.0.12", kernel_version="5.15.0-91-generic"),
        make_node("w3", "10.0.0.13", kernel_version="5.15.0-91-generic"),
    ]
