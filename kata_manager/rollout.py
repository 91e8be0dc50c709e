"""Node rollout controller for the kata-deploy installer.

The kata-deploy DaemonSet only schedules onto nodes carrying the enabling
label, so enabling Kata on a node means labeling it and waiting for that node's
installer pod to become ready. The label doubles as the progress marker: a
staged rollout that was stopped part-way skips nodes that are already labeled
when it is re-run.
"""

from kata_manager.config import (
    KATA_DEPLOY_NAME,
    KATA_DEPLOY_SELECTOR,
    KATA_LABEL_KEY,
    KATA_LABEL_VALUE,
    FailedNodePolicy,
    KataSettings,
)
from kata_manager.confirm import Confirmer
from kata_manager.exceptions import KataManagerError, OperationAborted, WorkloadFailedError
from kata_manager.kube import KubeClient
from kata_manager.logging_config import get_logger
from kata_manager.manifests import (
    DEPLOY_MANIFEST,
    RUNTIMECLASS_MANIFEST,
    manifest_path,
    rendered_manifest,
)
from kata_manager.models.node import ClusterNode
from kata_manager.models.rollout import (
    NodeOutcome,
    NodeResult,
    RolloutMode,
    RolloutPlan,
    RolloutReport,
)
from kata_manager.polling import Clock, SystemClock, poll_until
from kata_manager.reporting import Reporter

logger = get_logger(__name__)


class RolloutController:
    """Brings target nodes to the runtime-enabled state."""

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

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def resolve_targets(self) -> list[ClusterNode]:
        """Worker nodes to enable, in order.

        WORKER_NODES entries are matched against node names and InternalIPs;
        without it, every node lacking a control-plane role label is a target.
        """
        explicit = self.settings.worker_list
        if not explicit:
            return self.kube.list_worker_nodes()

        nodes = self.kube.list_nodes()
        lookup = {n.name: n for n in nodes}
        lookup.update({n.address: n for n in nodes if n.address})

        missing = [entry for entry in explicit if entry not in lookup]
        if missing:
            raise KataManagerError(
                f"Configured worker nodes not found in the cluster: {', '.join(missing)}",
                "WORKER_NODES entries must be node names or InternalIP addresses",
            )

        targets: list[ClusterNode] = []
        for entry in explicit:
            node = lookup[entry]
            if node.name not in {t.name for t in targets}:
                targets.append(node)
        return targets

    def plan(self, mode: RolloutMode) -> RolloutPlan:
        return RolloutPlan(nodes=self.resolve_targets(), mode=mode)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _confirm_start(self, message: str) -> None:
        if self.dry_run:
            return
        self.reporter.echo()
        self.reporter.warn(message)
        if not self.confirmer.confirm("Continue?", default=False):
            self.reporter.info("Aborted.")
            raise OperationAborted("Installation aborted by operator")

    def _label(self, node: ClusterNode) -> None:
        self.reporter.info(f"  Labeling {node.name} with {KATA_LABEL_KEY}={KATA_LABEL_VALUE}")
        if self.dry_run:
            self.reporter.dry_run(f"Would label node {node.name}")
            return
        self.kube.label_node(node.name)

    def _unlabel(self, node: ClusterNode) -> None:
        if self.dry_run:
            self.reporter.dry_run(f"Would remove {KATA_LABEL_KEY} from node {node.name}")
            return
        self.kube.unlabel_node(node.name)

    def _apply(self, path, description: str) -> None:
        if self.dry_run:
            self.reporter.dry_run(f"Would apply: {description}")
        self.kube.apply_manifest(path, dry_run=self.dry_run)

    def apply_static_manifests(self) -> None:
        """Apply the RuntimeClasses and the version-pinned kata-deploy DaemonSet."""
        self.reporter.info("Applying RuntimeClass manifests (kata, kata-qemu, kata-clh)...")
        self._apply(manifest_path(self.settings, RUNTIMECLASS_MANIFEST), RUNTIMECLASS_MANIFEST)
        self.reporter.ok("RuntimeClasses applied")

        self.reporter.info(f"Deploying kata-deploy DaemonSet (Kata {self.settings.kata_version})...")
        with rendered_manifest(self.settings, DEPLOY_MANIFEST) as path:
            self._apply(path, DEPLOY_MANIFEST)
        self.reporter.ok("kata-deploy DaemonSet applied")

    def _describe(self, plan: RolloutPlan) -> None:
        self.reporter.info("This will:")
        if plan.mode == RolloutMode.STAGED:
            self.reporter.echo("  1. Apply RuntimeClass manifests (kata, kata-qemu, kata-clh)")
            self.reporter.echo("  2. Deploy the kata-deploy DaemonSet (schedules only on labeled nodes)")
            self.reporter.echo("  3. Label one worker node at a time and wait for it to become ready")
        else:
            self.reporter.echo("  1. Label worker nodes for kata deployment")
            self.reporter.echo("  2. Apply RuntimeClass manifests (kata, kata-qemu, kata-clh)")
            self.reporter.echo("  3. Deploy the kata-deploy DaemonSet to all worker nodes")
            self.reporter.echo("  4. Wait for kata-deploy to complete installation")
        self.reporter.echo()
        self.reporter.info(f"Kata version: {self.settings.kata_version}")
        self.reporter.info(f"Namespace:    {self.settings.k8s_namespace}")
        self.reporter.info(f"Mode:         {plan.mode.value}")
        names = ", ".join(n.name for n in plan.nodes) or "(none)"
        self.reporter.info(f"Nodes:        {names}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def install(self, mode: RolloutMode) -> RolloutReport:
        """Enable Kata on every target node.

        Raises:
            ClusterUnreachableError: Before any mutation, if the API is down
            OperationAborted: If the operator declines the initial confirmation
        """
        version = self.kube.ensure_reachable()
        self.reporter.ok(f"Cluster is reachable ({version})")

        plan = self.plan(mode)
        self._describe(plan)
        self._confirm_start("This will install Kata Containers on your k3s cluster.")

        if mode == RolloutMode.STAGED:
            return self.run_staged(plan)
        return self.run_all_at_once(plan)

    # ------------------------------------------------------------------
    # All at once
    # ------------------------------------------------------------------

    def _daemonset_ready(self, elapsed: float) -> bool:
        status = self.kube.daemonset_status(KATA_DEPLOY_NAME)
        if status is not None and status.rolled_out:
            self.reporter.ok(f"DaemonSet {KATA_DEPLOY_NAME} is ready ({status})")
            return True
        counts = str(status) if status is not None else "0/0"
        self.reporter.info(f"  {KATA_DEPLOY_NAME}: {counts} ready ({elapsed:.0f}s elapsed)")
        return False

    def run_all_at_once(self, plan: RolloutPlan) -> RolloutReport:
        report = RolloutReport(mode=RolloutMode.ALL_AT_ONCE)

        self.reporter.info("Step 1: Labeling worker nodes...")
        if not plan.nodes:
            self.reporter.warn("No worker nodes found (all nodes may be control-plane). Proceeding anyway.")
        while not plan.finished:
            self._label(plan.next_node())
        self.reporter.ok("Worker nodes labeled")

        self.reporter.info("Step 2: Applying manifests...")
        self.apply_static_manifests()

        if self.dry_run:
            self.reporter.dry_run("Would wait for kata-deploy DaemonSet to be ready")
            report.results = [NodeResult(node=n, outcome=NodeOutcome.DRY_RUN) for n in plan.nodes]
            return report

        timeout = self.settings.install_timeout
        self.reporter.info(f"Step 3: Waiting for kata-deploy to complete (timeout: {timeout:.0f}s)...")
        self.reporter.info("(This may take several minutes as it installs Kata on each node)")
        result = poll_until(
            self._daemonset_ready,
            timeout=timeout,
            interval=self.settings.poll_interval,
            clock=self.clock,
        )

        if result.succeeded:
            report.results = [NodeResult(node=n, outcome=NodeOutcome.SUCCEEDED) for n in plan.nodes]
            report.message = "Kata Containers installation complete"
            self.reporter.ok(report.message)
        else:
            report.timed_out = True
            report.results = [
                NodeResult(node=n, outcome=NodeOutcome.TIMEOUT_FAILED) for n in plan.nodes
            ]
            report.message = f"kata-deploy did not become ready within {timeout:.0f}s"
            self.reporter.error(report.message)
            self.reporter.info(
                f"Check pod logs: kubectl logs -n {self.settings.k8s_namespace} -l {KATA_DEPLOY_SELECTOR}"
            )
            self.reporter.info("Nodes remain labeled; re-run install or run uninstall to roll back.")
        return report

    # ------------------------------------------------------------------
    # Staged
    # ------------------------------------------------------------------

    def _node_ready(self, node: ClusterNode, elapsed: float) -> bool:
        pods = self.kube.list_pods(KATA_DEPLOY_SELECTOR, node_name=node.name)
        if not pods:
            self.reporter.info(f"  [{node.name}] waiting for kata-deploy pod to be scheduled ({elapsed:.0f}s)")
            return False

        for pod in pods:
            reason = pod.fatal_reason
            if reason:
                raise WorkloadFailedError(
                    f"kata-deploy pod {pod.name} on {node.name} is in {reason}",
                    f"Inspect with: kata-mgr logs --node {node.name}",
                )

        ready = sum(1 for p in pods if p.ready)
        if ready == len(pods):
            return True
        self.reporter.info(f"  [{node.name}] kata-deploy {ready}/{len(pods)} ready ({elapsed:.0f}s elapsed)")
        return False

    def enable_node(self, node: ClusterNode) -> NodeResult:
        """Label one node, wait for its installer pod, and compare health before and after."""
        before = self.kube.count_unhealthy_pods(node.name)
        self.reporter.info(f"[{node.name}] Workloads not running before: {before}")

        self._label(node)
        if self.dry_run:
            self.reporter.dry_run(f"Would wait for kata-deploy on {node.name}")
            return NodeResult(node=node, outcome=NodeOutcome.DRY_RUN, unhealthy_before=before)

        timeout = self.settings.node_timeout
        self.reporter.info(f"[{node.name}] Waiting for kata-deploy (timeout: {timeout:.0f}s)...")
        try:
            poll = poll_until(
                lambda elapsed: self._node_ready(node, elapsed),
                timeout=timeout,
                interval=self.settings.poll_interval,
                clock=self.clock,
            )
        except WorkloadFailedError as e:
            outcome = NodeOutcome.CRASH_FAILED
            message = e.message
            self.reporter.error(f"[{node.name}] {message}")
            if self.settings.failed_node_policy == FailedNodePolicy.UNLABEL:
                self._unlabel(node)
                self.reporter.warn(f"[{node.name}] Removed {KATA_LABEL_KEY} label")
            else:
                self.reporter.warn(
                    f"[{node.name}] Node left labeled; remove with: "
                    f"kubectl label node {node.name} {KATA_LABEL_KEY}-"
                )
        else:
            if poll.succeeded:
                outcome = NodeOutcome.SUCCEEDED
                message = f"kata-deploy ready after {poll.elapsed:.0f}s"
                self.reporter.ok(f"[{node.name}] {message}")
            else:
                outcome = NodeOutcome.TIMEOUT_FAILED
                message = f"kata-deploy not ready within {timeout:.0f}s"
                self.reporter.error(f"[{node.name}] {message}")

        after = self.kube.count_unhealthy_pods(node.name)
        if after > before:
            self.reporter.warn(
                f"[{node.name}] {after - before} more workload(s) not running than before ({before} -> {after})"
            )
        else:
            self.reporter.info(f"[{node.name}] Workloads not running after: {after}")

        return NodeResult(
            node=node,
            outcome=outcome,
            unhealthy_before=before,
            unhealthy_after=after,
            message=message,
        )

    def _should_continue(self, result: NodeResult, next_node: ClusterNode) -> bool:
        if result.outcome.failed:
            return self.confirmer.confirm(
                f"Node {result.node.name} failed ({result.outcome.value}). "
                f"Continue to {next_node.name} anyway?",
                default=False,
            )
        return self.confirmer.confirm(
            f"Node {result.node.name} is ready. Proceed to {next_node.name}?", default=True
        )

    def run_staged(self, plan: RolloutPlan) -> RolloutReport:
        report = RolloutReport(mode=RolloutMode.STAGED)
        if not plan.nodes:
            self.reporter.warn("No worker nodes found (all nodes may be control-plane).")

        self.apply_static_manifests()

        total = len(plan.nodes)
        while not plan.finished:
            position = plan.cursor + 1
            node = plan.next_node()
            self.reporter.echo()
            self.reporter.info(f"=== Node {position}/{total}: {node.name} ===")

            if node.kata_enabled:
                self.reporter.ok(f"[{node.name}] Already labeled, skipping")
                report.results.append(
                    NodeResult(node=node, outcome=NodeOutcome.SKIPPED, message="already labeled")
                )
                continue

            result = self.enable_node(node)
            report.results.append(result)
            if self.dry_run:
                continue

            pending = [n for n in plan.remaining if not n.kata_enabled]
            if not pending:
                continue
            if not self._should_continue(result, pending[0]):
                self.reporter.warn("Rollout halted by operator")
                break

        for node in plan.remaining:
            outcome = NodeOutcome.SKIPPED if node.kata_enabled else NodeOutcome.UNPROCESSED
            report.results.append(NodeResult(node=node, outcome=outcome))
        plan.cursor = len(plan.nodes)

        self._summarize(report)
        return report

    def _summarize(self, report: RolloutReport) -> None:
        self.reporter.echo()
        self.reporter.info(
            f"Succeeded: {report.succeeded}  Failed: {report.failed}  "
            f"Skipped: {report.skipped}  Unprocessed: {report.unprocessed}"
        )
        if report.failed:
            failed = ", ".join(r.node.name for r in report.results if r.outcome.failed)
            report.message = f"Kata rollout failed on: {failed}"
            self.reporter.error(report.message)
            self.reporter.info(f"Roll back a node with: kubectl label node <node> {KATA_LABEL_KEY}-")
            self.reporter.info("Or remove Kata entirely with: kata-mgr uninstall")
        elif report.unprocessed:
            report.message = "Rollout stopped early; re-run install --staged to resume"
            self.reporter.warn(report.message)
        else:
            report.message = "Staged rollout complete"
            self.reporter.ok(report.message)
