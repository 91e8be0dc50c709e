"""Removal of Kata Containers from the cluster.

Follows the upstream removal order: stop kata-deploy, run the kata-cleanup
DaemonSet to restore containerd configuration on every labeled node, then
delete RuntimeClasses, RBAC and finally the node labels. A failing step is
reported and the remaining steps still run, so node labels are always removed.
"""

from pydantic import BaseModel, Field

from kata_manager.config import (
    KATA_CLEANUP_NAME,
    KATA_DEPLOY_NAME,
    KATA_LABEL_KEY,
    KATA_LABEL_VALUE,
    TEST_POD_NAME,
    TEST_POD_NAMESPACE,
    KataSettings,
)
from kata_manager.confirm import Confirmer
from kata_manager.exceptions import (
    ClusterUnreachableError,
    KubernetesError,
    ManifestError,
    OperationAborted,
)
from kata_manager.kube import KubeClient
from kata_manager.logging_config import get_logger
from kata_manager.manifests import (
    CLEANUP_MANIFEST,
    RUNTIMECLASS_MANIFEST,
    manifest_path,
    rendered_manifest,
)
from kata_manager.polling import Clock, SystemClock, poll_until
from kata_manager.reporting import Reporter

logger = get_logger(__name__)

CLEANUP_SETTLE_SECONDS = 15
CLEANUP_TIMEOUT = 120

RBAC_CLUSTER_ROLE_BINDING = "kata-deploy-rb"
RBAC_CLUSTER_ROLE = "kata-deploy-role"
RBAC_SERVICE_ACCOUNT = "kata-deploy-sa"


class UninstallReport(BaseModel):
    failed_steps: list[str] = Field(default_factory=list)
    unlabeled_nodes: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


class Uninstaller:
    """Runs the removal steps in order."""

    def __init__(
        self,
        settings: KataSettings,
        kube: KubeClient,
        confirmer: Confirmer,
        reporter: Reporter | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.kube = kube
        self.confirmer = confirmer
        self.reporter = reporter or Reporter()
        self.clock = clock or SystemClock()

    @property
    def dry_run(self) -> bool:
        return self.settings.dry_run

    def _step(self, report: UninstallReport, title: str, action) -> None:
        self.reporter.info(title)
        try:
            action()
        except ClusterUnreachableError:
            raise
        except (KubernetesError, ManifestError) as e:
            self.reporter.warn(f"{title} failed: {e.message}")
            report.failed_steps.append(title)
        self.reporter.echo()

    def remove_test_pod(self) -> None:
        if self.dry_run:
            self.reporter.dry_run(f"Would delete pod {TEST_POD_NAMESPACE}/{TEST_POD_NAME}")
            return
        self.kube.delete_pod(TEST_POD_NAME, TEST_POD_NAMESPACE)
        self.reporter.ok("Test pod cleaned up")

    def delete_daemonset(self, name: str) -> None:
        if self.dry_run:
            self.reporter.dry_run(f"Would delete {name} DaemonSet")
            return
        self.kube.delete_daemonset(name)
        self.reporter.ok(f"{name} removed")

    def _cleanup_ready(self, elapsed: float) -> bool:
        status = self.kube.daemonset_status(KATA_CLEANUP_NAME)
        if status is not None and status.rolled_out:
            return True
        self.reporter.info(f"  {KATA_CLEANUP_NAME}: {status or '0/0'} ready ({elapsed:.0f}s elapsed)")
        return False

    def run_cleanup_daemonset(self) -> None:
        with rendered_manifest(self.settings, CLEANUP_MANIFEST) as path:
            if self.dry_run:
                self.reporter.dry_run(f"Would apply: {CLEANUP_MANIFEST}")
            self.kube.apply_manifest(path, dry_run=self.dry_run)
        if self.dry_run:
            return

        self.reporter.info("Waiting for cleanup DaemonSet to run on all nodes...")
        self.clock.sleep(CLEANUP_SETTLE_SECONDS)
        result = poll_until(
            self._cleanup_ready,
            timeout=CLEANUP_TIMEOUT,
            interval=self.settings.poll_interval,
            clock=self.clock,
        )
        if result.timed_out:
            self.reporter.warn(f"{KATA_CLEANUP_NAME} did not report ready; continuing")
        # Give the reset script time to finish on each node
        self.clock.sleep(CLEANUP_SETTLE_SECONDS)
        self.reporter.ok("Cleanup DaemonSet ran")

    def remove_runtime_classes(self) -> None:
        path = manifest_path(self.settings, RUNTIMECLASS_MANIFEST)
        if self.dry_run:
            self.reporter.dry_run(f"Would delete: {RUNTIMECLASS_MANIFEST}")
        self.kube.delete_manifest(path, dry_run=self.dry_run)
        self.reporter.ok("RuntimeClasses removed")

    def remove_rbac(self) -> None:
        if self.dry_run:
            self.reporter.dry_run("Would delete RBAC resources")
            return
        self.kube.delete_cluster_role_binding(RBAC_CLUSTER_ROLE_BINDING)
        self.kube.delete_cluster_role(RBAC_CLUSTER_ROLE)
        self.kube.delete_service_account(RBAC_SERVICE_ACCOUNT)
        self.reporter.ok("RBAC resources removed")

    def remove_node_labels(self, report: UninstallReport) -> None:
        labeled = self.kube.list_nodes(f"{KATA_LABEL_KEY}={KATA_LABEL_VALUE}")
        failed = []
        for node in labeled:
            if self.dry_run:
                self.reporter.dry_run(f"Would remove {KATA_LABEL_KEY} from {node.name}")
                continue
            try:
                self.kube.unlabel_node(node.name)
            except ClusterUnreachableError:
                raise
            except KubernetesError as e:
                self.reporter.warn(f"Could not unlabel {node.name}: {e.message}")
                failed.append(node.name)
                continue
            report.unlabeled_nodes.append(node.name)
        if failed:
            raise KubernetesError(f"Failed to remove label from: {', '.join(failed)}")
        self.reporter.ok(f"Node labels removed ({len(labeled)} node(s))")

    def run(self) -> UninstallReport:
        """Remove Kata from the cluster.

        Raises:
            ClusterUnreachableError: If the API is down
            OperationAborted: If the operator declines the confirmation
        """
        version = self.kube.ensure_reachable()
        self.reporter.ok(f"Cluster is reachable ({version})")

        self.reporter.info("This will:")
        self.reporter.echo("  1. Delete the test pod (if exists)")
        self.reporter.echo("  2. Run kata-cleanup DaemonSet on all worker nodes")
        self.reporter.echo("  3. Remove kata-deploy and kata-cleanup DaemonSets")
        self.reporter.echo("  4. Remove RuntimeClasses (kata, kata-qemu, kata-clh)")
        self.reporter.echo("  5. Remove node labels")
        self.reporter.echo()

        if not self.dry_run:
            self.reporter.warn("This will completely remove Kata Containers from your cluster.")
            if not self.confirmer.confirm("Continue?", default=False):
                self.reporter.info("Aborted.")
                raise OperationAborted("Uninstall aborted by operator")

        report = UninstallReport()
        self._step(report, "Step 1: Removing test pod (if present)...", self.remove_test_pod)
        self._step(
            report,
            "Step 2: Deleting kata-deploy DaemonSet...",
            lambda: self.delete_daemonset(KATA_DEPLOY_NAME),
        )
        self._step(report, "Step 3: Running kata-cleanup DaemonSet...", self.run_cleanup_daemonset)
        self._step(
            report,
            "Step 4: Removing cleanup DaemonSet...",
            lambda: self.delete_daemonset(KATA_CLEANUP_NAME),
        )
        self._step(report, "Step 5: Removing RuntimeClasses...", self.remove_runtime_classes)
        self._step(report, "Step 6: Removing RBAC resources...", self.remove_rbac)
        self._step(
            report, "Step 7: Removing node labels...", lambda: self.remove_node_labels(report)
        )

        if report.ok:
            self.reporter.ok("Kata Containers has been removed from the cluster")
        else:
            self.reporter.warn(f"Completed with {len(report.failed_steps)} failed step(s)")
        self.reporter.info("Note: You may want to restart k3s on worker nodes so that")
        self.reporter.info("containerd picks up the config changes cleanly.")
        return report
