"""Kubernetes cluster access.

Reads and node label patches go through the official Kubernetes Python client.
Manifest files are applied and deleted with ``kubectl`` so that the client-side
dry-run and three-way merge behave exactly like an operator running it by hand.
"""

import subprocess
from pathlib import Path
from typing import Iterator

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from urllib3.exceptions import HTTPError

from kata_manager.config import KATA_LABEL_KEY, KATA_LABEL_VALUE
from kata_manager.exceptions import ClusterUnreachableError, KubernetesError
from kata_manager.logging_config import get_logger
from kata_manager.models.node import ClusterNode, DaemonSetStatus, PodState

logger = get_logger(__name__)

CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")
KUBECTL_TIMEOUT = 300


def _not_found(error: KubernetesError) -> bool:
    cause = error.__cause__
    return isinstance(cause, ApiException) and cause.status == 404


def node_from_api(node) -> ClusterNode:
    """Convert a V1Node into a ClusterNode."""
    labels = node.metadata.labels or {}
    role = "control-plane" if any(k in labels for k in CONTROL_PLANE_LABELS) else "worker"

    addresses = (node.status.addresses or []) if node.status else []
    internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), None)

    kernel = None
    if node.status and node.status.node_info:
        kernel = node.status.node_info.kernel_version

    return ClusterNode(
        name=node.metadata.name,
        address=internal_ip,
        role=role,
        kata_enabled=labels.get(KATA_LABEL_KEY) == KATA_LABEL_VALUE,
        kernel_version=kernel,
        labels=dict(labels),
    )


def pod_from_api(pod) -> PodState:
    """Convert a V1Pod into a PodState."""
    status = pod.status
    conditions = (status.conditions or []) if status else []
    ready = any(c.type == "Ready" and c.status == "True" for c in conditions)

    waiting = []
    if status:
        for cs in (status.init_container_statuses or []) + (status.container_statuses or []):
            if cs.state and cs.state.waiting and cs.state.waiting.reason:
                waiting.append(cs.state.waiting.reason)

    return PodState(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        node_name=pod.spec.node_name if pod.spec else None,
        phase=(status.phase if status and status.phase else "Unknown"),
        ready=ready,
        waiting_reasons=waiting,
    )


class KubeClient:
    """Thin accessor over the Kubernetes API and kubectl."""

    def __init__(
        self,
        core_api,
        apps_api,
        node_api=None,
        rbac_api=None,
        version_api=None,
        namespace: str = "kube-system",
        kubectl: str = "kubectl",
    ):
        self.core = core_api
        self.apps = apps_api
        self.node_api = node_api
        self.rbac = rbac_api
        self.version_api = version_api
        self.namespace = namespace
        self.kubectl = kubectl

    @classmethod
    def from_kubeconfig(cls, namespace: str = "kube-system") -> "KubeClient":
        """Load kubeconfig (honouring KUBECONFIG) and build API clients.

        Raises:
            ClusterUnreachableError: If no usable kubeconfig is found
        """
        try:
            config.load_kube_config()
        except (ConfigException, OSError) as e:
            logger.error(f"Failed to load kubeconfig: {e}")
            raise ClusterUnreachableError(
                f"Failed to load kubeconfig: {e}",
                "Make sure KUBECONFIG points at the k3s cluster "
                "(e.g. copy /etc/rancher/k3s/k3s.yaml to ~/.kube/config)",
            )

        return cls(
            core_api=client.CoreV1Api(),
            apps_api=client.AppsV1Api(),
            node_api=client.NodeV1Api(),
            rbac_api=client.RbacAuthorizationV1Api(),
            version_api=client.VersionApi(),
            namespace=namespace,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call(self, action: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            logger.error(f"Kubernetes API error while trying to {action}: {e.status} {e.reason}")
            raise KubernetesError(
                f"Failed to {action}", f"{e.status} {e.reason}: {e.body}"
            ) from e
        except (HTTPError, OSError) as e:
            logger.error(f"Cannot reach the cluster while trying to {action}: {e}")
            raise ClusterUnreachableError(
                "Cannot reach the cluster", "Check KUBECONFIG or cluster status."
            ) from e

    def _call_ignore_missing(self, action: str, fn, *args, **kwargs) -> bool:
        """Like _call, but a 404 returns False instead of raising."""
        try:
            self._call(action, fn, *args, **kwargs)
        except KubernetesError as e:
            if _not_found(e):
                logger.debug(f"Nothing to {action}: not found")
                return False
            raise
        return True

    def _kubectl(self, args: list[str]) -> str:
        cmd = [self.kubectl, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=KUBECTL_TIMEOUT
            )
        except FileNotFoundError:
            raise KubernetesError("kubectl not found in PATH", "Install kubectl to manage manifests")
        except subprocess.TimeoutExpired:
            raise KubernetesError(
                f"kubectl timed out after {KUBECTL_TIMEOUT}s", f"Command: {' '.join(cmd)}"
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"kubectl failed with return code {e.returncode}: {e.stderr}")
            raise KubernetesError(f"kubectl {args[0]} failed", e.stderr.strip())
        return result.stdout

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------

    def ensure_reachable(self) -> str:
        """Return the server version, raising ClusterUnreachableError if the API is down."""
        try:
            info = self.version_api.get_code()
        except (ApiException, HTTPError, OSError) as e:
            logger.error(f"Cluster health check failed: {e}")
            raise ClusterUnreachableError(
                "Cannot reach the cluster", "Check KUBECONFIG or cluster status."
            ) from e
        return info.git_version

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def list_nodes(self, label_selector: str | None = None) -> list[ClusterNode]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        response = self._call("list nodes", self.core.list_node, **kwargs)
        return [node_from_api(n) for n in response.items]

    def list_worker_nodes(self) -> list[ClusterNode]:
        """Nodes without a control-plane role label."""
        workers = self.list_nodes(f"!{CONTROL_PLANE_LABELS[0]}")
        if not workers:
            # Older k3s releases only set the master label
            workers = self.list_nodes(f"!{CONTROL_PLANE_LABELS[1]}")
        return workers

    def label_node(self, name: str, key: str = KATA_LABEL_KEY, value: str = KATA_LABEL_VALUE):
        logger.info(f"Labeling node {name} with {key}={value}")
        body = {"metadata": {"labels": {key: value}}}
        self._call(f"label node {name}", self.core.patch_node, name, body)

    def unlabel_node(self, name: str, key: str = KATA_LABEL_KEY):
        logger.info(f"Removing label {key} from node {name}")
        body = {"metadata": {"labels": {key: None}}}
        self._call(f"unlabel node {name}", self.core.patch_node, name, body)

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    def daemonset_status(self, name: str) -> DaemonSetStatus | None:
        try:
            ds = self._call(
                f"read DaemonSet {name}",
                self.apps.read_namespaced_daemon_set_status,
                name,
                self.namespace,
            )
        except KubernetesError as e:
            if _not_found(e):
                return None
            raise
        status = ds.status
        return DaemonSetStatus(
            name=name,
            desired=(status.desired_number_scheduled or 0) if status else 0,
            ready=(status.number_ready or 0) if status else 0,
        )

    def list_pods(
        self,
        label_selector: str | None = None,
        node_name: str | None = None,
        namespace: str | None = None,
    ) -> list[PodState]:
        kwargs = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if node_name:
            kwargs["field_selector"] = f"spec.nodeName={node_name}"
        response = self._call(
            "list pods", self.core.list_namespaced_pod, namespace or self.namespace, **kwargs
        )
        return [pod_from_api(p) for p in response.items]

    def count_unhealthy_pods(self, node_name: str) -> int:
        """Pods scheduled on the node that are neither Running nor Succeeded."""
        response = self._call(
            f"list pods on {node_name}",
            self.core.list_pod_for_all_namespaces,
            field_selector=f"spec.nodeName={node_name}",
        )
        return sum(1 for p in response.items if not pod_from_api(p).healthy)

    def get_pod(self, name: str, namespace: str) -> PodState | None:
        try:
            pod = self._call(f"read pod {name}", self.core.read_namespaced_pod, name, namespace)
        except KubernetesError as e:
            if _not_found(e):
                return None
            raise
        return pod_from_api(pod)

    def delete_pod(self, name: str, namespace: str) -> bool:
        return self._call_ignore_missing(
            f"delete pod {name}", self.core.delete_namespaced_pod, name, namespace
        )

    def pod_logs(self, name: str, namespace: str, tail_lines: int | None = None) -> str:
        kwargs = {"tail_lines": tail_lines} if tail_lines else {}
        return self._call(
            f"read logs of pod {name}", self.core.read_namespaced_pod_log, name, namespace, **kwargs
        )

    def stream_pod_logs(self, name: str, namespace: str) -> Iterator[str]:
        w = watch.Watch()
        try:
            yield from w.stream(self.core.read_namespaced_pod_log, name=name, namespace=namespace)
        except ApiException as e:
            raise KubernetesError(f"Failed to follow logs of pod {name}", f"{e.status} {e.reason}")
        finally:
            w.stop()

    def list_runtime_classes(self) -> list[tuple[str, str]]:
        """Return (name, handler) for every RuntimeClass."""
        response = self._call("list RuntimeClasses", self.node_api.list_runtime_class)
        return [(rc.metadata.name, rc.handler) for rc in response.items]

    # ------------------------------------------------------------------
    # Deletion of named objects
    # ------------------------------------------------------------------

    def delete_daemonset(self, name: str) -> bool:
        return self._call_ignore_missing(
            f"delete DaemonSet {name}",
            self.apps.delete_namespaced_daemon_set,
            name,
            self.namespace,
        )

    def delete_cluster_role_binding(self, name: str) -> bool:
        return self._call_ignore_missing(
            f"delete ClusterRoleBinding {name}", self.rbac.delete_cluster_role_binding, name
        )

    def delete_cluster_role(self, name: str) -> bool:
        return self._call_ignore_missing(
            f"delete ClusterRole {name}", self.rbac.delete_cluster_role, name
        )

    def delete_service_account(self, name: str) -> bool:
        return self._call_ignore_missing(
            f"delete ServiceAccount {name}",
            self.core.delete_namespaced_service_account,
            name,
            self.namespace,
        )

    # ------------------------------------------------------------------
    # kubectl-backed operations
    # ------------------------------------------------------------------

    def apply_manifest(self, path: Path, dry_run: bool = False) -> str:
        args = ["apply", "-f", str(path)]
        if dry_run:
            args.append("--dry-run=client")
        return self._kubectl(args)

    def delete_manifest(self, path: Path, dry_run: bool = False) -> str:
        args = ["delete", "--ignore-not-found=true", "-f", str(path)]
        if dry_run:
            args.append("--dry-run=client")
        return self._kubectl(args)

    def describe_daemonset(self, name: str) -> str:
        return self._kubectl(["describe", "daemonset", name, "-n", self.namespace])

    def run_interactive(self, args: list[str]) -> int:
        """Run kubectl attached to the terminal and return its exit code."""
        cmd = [self.kubectl, *args]
        logger.debug(f"Running interactively: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd).returncode
        except FileNotFoundError:
            raise KubernetesError("kubectl not found in PATH", "Install kubectl to open a shell")
