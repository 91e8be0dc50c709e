"""Verification that Kata is active, not just installed.

A canary pod runs under the ``kata`` RuntimeClass and prints its kernel
release. Inside a Kata VM that is the guest kernel, so it must differ from the
host's; an identical kernel means the pod silently fell back to runc.
"""

import re

from kata_manager.config import (
    KATA_DEPLOY_NAME,
    KATA_DEPLOY_SELECTOR,
    KATA_LABEL_KEY,
    KATA_LABEL_VALUE,
    TEST_POD_NAME,
    TEST_POD_NAMESPACE,
    KataSettings,
)
from kata_manager.exceptions import KubernetesError
from kata_manager.kube import KubeClient
from kata_manager.logging_config import get_logger
from kata_manager.manifests import TEST_POD_MANIFEST, manifest_path
from kata_manager.models.verification import (
    CheckResult,
    CheckStatus,
    VerificationReport,
    VerificationResult,
    Verdict,
)
from kata_manager.polling import Clock, SystemClock, poll_until
from kata_manager.reporting import Reporter

logger = get_logger(__name__)

KERNEL_LINE = re.compile(r"^Kernel:\s*(\S+)", re.MULTILINE)
CANARY_TIMEOUT = 120
CANARY_POLL_INTERVAL = 2
CANARY_SETTLE_SECONDS = 2


def extract_guest_kernel(logs: str) -> str | None:
    """Kernel release from the canary's ``Kernel: <release>`` line."""
    match = KERNEL_LINE.search(logs or "")
    return match.group(1) if match else None


def judge_isolation(host_kernel: str | None, guest_kernel: str | None) -> Verdict:
    if not host_kernel or not guest_kernel:
        return Verdict.INDETERMINATE
    if host_kernel == guest_kernel:
        return Verdict.NOT_ISOLATED
    return Verdict.ISOLATED


class VerificationRunner:
    """Runs the installation checks and the canary comparison."""

    def __init__(
        self,
        settings: KataSettings,
        kube: KubeClient,
        reporter: Reporter | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.kube = kube
        self.reporter = reporter or Reporter()
        self.clock = clock or SystemClock()

    def check_runtime_classes(self) -> CheckResult:
        self.reporter.info("Checking RuntimeClasses...")
        kata = [(name, handler) for name, handler in self.kube.list_runtime_classes() if "kata" in name]
        if kata:
            self.reporter.ok("Kata RuntimeClasses found:")
            for name, handler in kata:
                self.reporter.echo(f"  - {name} (handler: {handler})")
            return CheckResult(
                name="runtimeclasses",
                status=CheckStatus.OK,
                message=", ".join(name for name, _ in kata),
            )
        self.reporter.error("No kata RuntimeClasses found")
        self.reporter.info("Run 'kata-mgr install' first")
        return CheckResult(name="runtimeclasses", status=CheckStatus.FAIL, message="none found")

    def check_daemonset(self) -> CheckResult:
        self.reporter.info(f"Checking {KATA_DEPLOY_NAME} DaemonSet...")
        status = self.kube.daemonset_status(KATA_DEPLOY_NAME)
        if status is None:
            self.reporter.error(f"{KATA_DEPLOY_NAME} DaemonSet not found")
            return CheckResult(name="daemonset", status=CheckStatus.FAIL, message="not found")

        if status.rolled_out:
            self.reporter.ok(f"{KATA_DEPLOY_NAME} DaemonSet: {status} pods ready")
            result = CheckResult(name="daemonset", status=CheckStatus.OK, message=str(status))
        else:
            self.reporter.warn(f"{KATA_DEPLOY_NAME} DaemonSet: {status} pods ready (not fully rolled out)")
            result = CheckResult(name="daemonset", status=CheckStatus.WARN, message=str(status))

        for pod in self.kube.list_pods(KATA_DEPLOY_SELECTOR):
            state = "Ready" if pod.ready else pod.fatal_reason or pod.phase
            self.reporter.echo(f"  - {pod.name} on {pod.node_name or 'unscheduled'}: {state}")
        return result

    def check_node_labels(self) -> CheckResult:
        self.reporter.info("Checking node labels...")
        labeled = self.kube.list_nodes(f"{KATA_LABEL_KEY}={KATA_LABEL_VALUE}")
        if labeled:
            self.reporter.ok("Nodes labeled for Kata:")
            for node in labeled:
                self.reporter.echo(f"  - {node.name}")
            return CheckResult(
                name="node-labels",
                status=CheckStatus.OK,
                message=", ".join(n.name for n in labeled),
            )
        self.reporter.warn(f"No nodes labeled with {KATA_LABEL_KEY}={KATA_LABEL_VALUE}")
        return CheckResult(name="node-labels", status=CheckStatus.WARN, message="none labeled")

    def _host_kernel(self, node_name: str | None) -> str | None:
        nodes = self.kube.list_nodes()
        if node_name:
            for node in nodes:
                if node.name == node_name:
                    return node.kernel_version
        return nodes[0].kernel_version if nodes else None

    def _canary_settled(self, elapsed: float) -> bool:
        pod = self.kube.get_pod(TEST_POD_NAME, TEST_POD_NAMESPACE)
        if pod is None:
            return False
        if pod.ready or pod.phase in ("Succeeded", "Failed"):
            return True
        logger.debug(f"Canary pod phase {pod.phase} after {elapsed:.0f}s")
        return False

    def run_canary(self) -> VerificationResult:
        """Deploy the canary pod and compare its kernel with the host's."""
        self.reporter.info("Deploying test pod with runtimeClassName: kata...")
        path = manifest_path(self.settings, TEST_POD_MANIFEST)

        if self.settings.dry_run:
            self.reporter.dry_run(f"Would replace pod {TEST_POD_NAMESPACE}/{TEST_POD_NAME}")
            self.kube.apply_manifest(path, dry_run=True)
            self.reporter.dry_run("Would wait for the test pod and compare kernels")
            return VerificationResult(
                host_kernel=self._host_kernel(None), verdict=Verdict.INDETERMINATE
            )

        self.kube.delete_pod(TEST_POD_NAME, TEST_POD_NAMESPACE)
        self.clock.sleep(CANARY_SETTLE_SECONDS)
        self.kube.apply_manifest(path)

        self.reporter.info("Waiting for test pod to start...")
        poll = poll_until(
            self._canary_settled,
            timeout=CANARY_TIMEOUT,
            interval=CANARY_POLL_INTERVAL,
            clock=self.clock,
        )
        pod = self.kube.get_pod(TEST_POD_NAME, TEST_POD_NAMESPACE)
        phase = pod.phase if pod else "Unknown"
        if poll.succeeded and pod and (pod.ready or phase == "Succeeded"):
            self.reporter.ok(f"Test pod reached {phase}")
        else:
            self.reporter.warn(f"Test pod status: {phase}")

        host_kernel = self._host_kernel(pod.node_name if pod else None)
        self.reporter.info(f"Host kernel: {host_kernel}")

        try:
            logs = self.kube.pod_logs(TEST_POD_NAME, TEST_POD_NAMESPACE)
        except KubernetesError as e:
            logger.debug(f"Could not read canary logs: {e}")
            logs = ""
            self.reporter.warn("Could not retrieve logs yet")
        else:
            self.reporter.info("Test pod logs:")
            self.reporter.echo("-" * 44)
            self.reporter.echo(logs.rstrip())
            self.reporter.echo("-" * 44)

        guest_kernel = extract_guest_kernel(logs)
        return VerificationResult(
            host_kernel=host_kernel,
            guest_kernel=guest_kernel,
            verdict=judge_isolation(host_kernel, guest_kernel),
        )

    def _canary_check(self, result: VerificationResult) -> CheckResult:
        if result.verdict == Verdict.ISOLATED:
            self.reporter.ok(
                f"SUCCESS: Pod kernel ({result.guest_kernel}) differs from host ({result.host_kernel})"
            )
            self.reporter.ok("Kata Containers is working! The pod is running inside a VM.")
            status = CheckStatus.OK
        elif result.verdict == Verdict.NOT_ISOLATED:
            self.reporter.error("FAIL: Pod kernel matches host kernel; Kata may not be active")
            self.reporter.info("The pod may be using the default runtime instead of kata")
            status = CheckStatus.FAIL
        else:
            self.reporter.warn("Could not determine pod kernel version from logs")
            self.reporter.info(f"Check manually: kubectl logs {TEST_POD_NAME}")
            status = CheckStatus.WARN
        return CheckResult(name="canary", status=status, message=result.verdict.value)

    def run(self, skip_canary: bool = False) -> VerificationReport:
        version = self.kube.ensure_reachable()
        self.reporter.ok(f"Cluster is reachable ({version})")

        report = VerificationReport()
        report.checks.append(self.check_runtime_classes())
        self.reporter.echo()
        report.checks.append(self.check_daemonset())
        self.reporter.echo()
        report.checks.append(self.check_node_labels())
        self.reporter.echo()

        if not skip_canary:
            report.canary = self.run_canary()
            report.checks.append(self._canary_check(report.canary))
            self.reporter.echo()
            self.reporter.info("Leave the test pod for inspection, or clean up with: kata-mgr clean-test")

        self.reporter.echo()
        if report.ok:
            self.reporter.ok("All verification checks passed")
        else:
            self.reporter.error("Some checks failed. Review the output above.")
        return report
