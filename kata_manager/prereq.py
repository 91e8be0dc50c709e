"""Read-only prerequisite checks for Kata Containers on cluster hosts.

Critical checks (hardware virtualization, /dev/kvm, the kvm module) fail the
host. Everything else only produces warnings or informational output.
Connection failures are not caught here: an unreachable host aborts the run.
"""

from kata_manager.exceptions import (
    CommandDeclinedError,
    KataManagerError,
    RemoteCommandError,
)
from kata_manager.logging_config import get_logger
from kata_manager.models.verification import CheckResult, CheckStatus, NodeCheckReport
from kata_manager.remote import RemoteExecutor
from kata_manager.reporting import Reporter

logger = get_logger(__name__)

KERNEL_MODULES = ("kvm", "kvm_intel", "kvm_amd", "vhost_net", "vhost_vsock")
ALTERNATIVE_MODULES = ("kvm_intel", "kvm_amd")  # only one applies to a given CPU
MIN_KERNEL = (5, 4)
MIN_MEMORY_GB = 2

OS_RELEASE_CMD = "cat /etc/os-release | grep -E '^(NAME|VERSION_ID)=' | tr '\\n' ' '"
KERNEL_CMD = "uname -r"
MEMORY_CMD = "grep MemTotal /proc/meminfo | awk '{print $2}'"
CPU_COUNT_CMD = "nproc"
VIRT_FLAGS_CMD = "grep -cE '(vmx|svm)' /proc/cpuinfo 2>/dev/null || echo 0"
DEV_KVM_CMD = "test -c /dev/kvm"
K3S_CONTAINERD_CMD = "pgrep -f 'k3s.*containerd' >/dev/null 2>&1"
CONTAINERD_SERVICE_CMD = "systemctl is-active --quiet containerd"


def module_loaded_cmd(module: str) -> str:
    return f"lsmod | grep -q '^{module} '"


def probe_commands() -> list[str]:
    """Every command the checks run against a host, in order."""
    return [
        OS_RELEASE_CMD,
        KERNEL_CMD,
        MEMORY_CMD,
        CPU_COUNT_CMD,
        VIRT_FLAGS_CMD,
        DEV_KVM_CMD,
        *(module_loaded_cmd(mod) for mod in KERNEL_MODULES),
        K3S_CONTAINERD_CMD,
        CONTAINERD_SERVICE_CMD,
    ]


def parse_int(output: str) -> int | None:
    """First integer on the first line of command output, if any."""
    first = output.strip().splitlines()[0] if output.strip() else ""
    try:
        return int(first.strip())
    except ValueError:
        return None


def parse_kernel_version(release: str) -> tuple[int, int] | None:
    """Major and minor from a ``uname -r`` string such as ``5.15.0-91-generic``."""
    parts = release.strip().split(".")
    if len(parts) < 2:
        return None
    try:
        minor = "".join(ch for ch in parts[1] if ch.isdigit())
        return int(parts[0]), int(minor)
    except ValueError:
        return None


class PrereqChecker:
    """Runs the prerequisite checks against one or more hosts."""

    def __init__(self, executor: RemoteExecutor, reporter: Reporter):
        self.executor = executor
        self.reporter = reporter

    def _record(self, report: NodeCheckReport, name: str, status: CheckStatus, message: str):
        prefixed = f"[{report.host}] {message}"
        if status == CheckStatus.OK:
            self.reporter.ok(prefixed)
        elif status == CheckStatus.WARN:
            self.reporter.warn(prefixed)
        elif status == CheckStatus.FAIL:
            self.reporter.error(prefixed)
        else:
            self.reporter.info(prefixed)
        report.checks.append(CheckResult(name=name, status=status, message=message))

    def check_os(self, host: str, report: NodeCheckReport) -> None:
        os_info = self.executor.run(host, OS_RELEASE_CMD)
        self._record(report, "os", CheckStatus.INFO, f"OS: {os_info}")

    def check_kernel_version(self, host: str, report: NodeCheckReport) -> None:
        release = self.executor.run(host, KERNEL_CMD)
        version = parse_kernel_version(release)
        if version is None:
            self._record(report, "kernel", CheckStatus.WARN, f"Could not parse kernel '{release}'")
        elif version >= MIN_KERNEL:
            self._record(report, "kernel", CheckStatus.OK, f"Kernel version {release} is compatible")
        else:
            self._record(
                report,
                "kernel",
                CheckStatus.WARN,
                f"Kernel {release} may be too old (recommended >= {MIN_KERNEL[0]}.{MIN_KERNEL[1]})",
            )

    def check_resources(self, host: str, report: NodeCheckReport) -> None:
        mem_kb = parse_int(self.executor.run(host, MEMORY_CMD))
        cpus = parse_int(self.executor.run(host, CPU_COUNT_CMD))
        mem_gb = mem_kb // 1024 // 1024 if mem_kb is not None else None
        self.reporter.info(f"[{host}] Memory: {mem_gb}GB, CPUs: {cpus}")

        if mem_gb is None:
            self._record(report, "memory", CheckStatus.WARN, "Could not read MemTotal")
        elif mem_gb < MIN_MEMORY_GB:
            self._record(
                report,
                "memory",
                CheckStatus.WARN,
                f"Less than {MIN_MEMORY_GB}GB RAM; Kata VMs need memory overhead",
            )
        else:
            self._record(report, "memory", CheckStatus.OK, "Memory looks sufficient")

    def check_virtualization(self, host: str, report: NodeCheckReport) -> None:
        count = parse_int(self.executor.run(host, VIRT_FLAGS_CMD))
        if count:
            self._record(
                report,
                "virtualization",
                CheckStatus.OK,
                f"Hardware virtualization supported ({count} vCPUs with vmx/svm)",
            )
        else:
            self._record(
                report,
                "virtualization",
                CheckStatus.FAIL,
                "No hardware virtualization (vmx/svm) detected; "
                "Kata needs nested virt or bare metal with VT-x/AMD-V",
            )

    def check_dev_kvm(self, host: str, report: NodeCheckReport) -> None:
        if self.executor.succeeds(host, DEV_KVM_CMD):
            self._record(report, "dev-kvm", CheckStatus.OK, "/dev/kvm exists and is a character device")
        else:
            self._record(
                report, "dev-kvm", CheckStatus.FAIL, "/dev/kvm not found; Kata requires KVM device access"
            )

    def check_kernel_modules(self, host: str, report: NodeCheckReport) -> None:
        loaded = set()
        for mod in KERNEL_MODULES:
            if self.executor.succeeds(host, module_loaded_cmd(mod)):
                loaded.add(mod)
                self.reporter.ok(f"[{host}] Module loaded: {mod}")
            elif mod in ALTERNATIVE_MODULES:
                self.reporter.info(f"[{host}] Module not loaded: {mod} (may not apply to this CPU)")
            else:
                self.reporter.warn(f"[{host}] Module not loaded: {mod}")

        if "kvm" in loaded:
            self._record(report, "kvm-module", CheckStatus.OK, "KVM module is available")
        else:
            self._record(
                report, "kvm-module", CheckStatus.FAIL, "KVM module not loaded; Kata requires KVM"
            )

    def check_containerd(self, host: str, report: NodeCheckReport) -> None:
        # k3s bundles its own containerd
        try:
            if self.executor.succeeds(host, K3S_CONTAINERD_CMD):
                self._record(report, "containerd", CheckStatus.OK, "k3s containerd is running")
                return
            if self.executor.succeeds(host, CONTAINERD_SERVICE_CMD):
                self._record(report, "containerd", CheckStatus.OK, "containerd is running (standalone)")
                return
        except CommandDeclinedError:
            logger.debug(f"[{host}] containerd service probe declined")
        self._record(
            report,
            "containerd",
            CheckStatus.WARN,
            "containerd not detected; expected for k3s nodes",
        )

    def check_host(self, host: str) -> NodeCheckReport:
        """Run every check against one host.

        Raises:
            RemoteConnectionError: If the host cannot be reached
        """
        report = NodeCheckReport(host=host)
        if self.executor.settings.dry_run:
            for command in probe_commands():
                self.executor.run(host, command)
            report.checks.append(
                CheckResult(name="dry-run", status=CheckStatus.INFO, message="not executed")
            )
            return report

        informational = (self.check_os, self.check_kernel_version, self.check_resources)
        critical = (self.check_virtualization, self.check_dev_kvm, self.check_kernel_modules)

        for check in informational:
            try:
                check(host, report)
            except (RemoteCommandError, CommandDeclinedError) as e:
                self._record(report, check.__name__, CheckStatus.WARN, e.message)
        for check in critical:
            try:
                check(host, report)
            except (RemoteCommandError, CommandDeclinedError) as e:
                self._record(report, check.__name__, CheckStatus.FAIL, e.message)
        self.check_containerd(host, report)

        if report.ok:
            self.reporter.ok(f"Node {host}: All critical checks passed")
        else:
            self.reporter.error(f"Node {host}: One or more critical checks failed")
        return report

    def run(self, hosts: list[str]) -> list[NodeCheckReport]:
        if not hosts:
            raise KataManagerError(
                "No nodes found", "Set WORKER_NODES in .env or pass hosts as arguments."
            )
        self.reporter.info(f"Checking {len(hosts)} node(s): {' '.join(hosts)}")
        reports = []
        for host in hosts:
            self.reporter.echo("-" * 44)
            self.reporter.info(f"Checking node: {host}")
            self.reporter.echo("-" * 44)
            reports.append(self.check_host(host))
            self.reporter.echo()

        failed = sum(1 for r in reports if not r.ok)
        if failed:
            self.reporter.error(
                f"{failed} node(s) have issues that need resolving before installing Kata"
            )
        else:
            self.reporter.ok("All nodes passed prerequisite checks")
        return reports


def select_hosts(settings, kube_factory, hosts: list[str], include_all: bool) -> list[str]:
    """Hosts to check: explicit arguments, then WORKER_NODES, then cluster discovery.

    ``kube_factory`` is only called when discovery is needed.
    """
    if hosts:
        return list(hosts)
    if settings.worker_list:
        return settings.worker_list
    kube = kube_factory()
    nodes = kube.list_nodes() if include_all else kube.list_worker_nodes()
    return [n.address or n.name for n in nodes]
