"""Main CLI entry point for Kata Containers management."""

from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from kata_manager.config import (
    KATA_DEPLOY_NAME,
    KATA_DEPLOY_SELECTOR,
    KATA_LABEL_KEY,
    KATA_LABEL_VALUE,
    TEST_POD_NAME,
    TEST_POD_NAMESPACE,
    FailedNodePolicy,
    KataSettings,
    load_settings,
)
from kata_manager.exceptions import KataManagerError, OperationAborted
from kata_manager.logging_config import get_logger, setup_logging
from kata_manager.reporting import Reporter

app = typer.Typer(
    name="kata-mgr",
    help="Install, verify and remove Kata Containers on a k3s cluster",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")

    try:
        ctx.obj = load_settings()
    except KataManagerError as e:
        _report_error(e)
        raise typer.Exit(code=1)


def _report_error(e: KataManagerError) -> None:
    logger.error(e.message)
    console.print(f"[red]Error:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")


@contextmanager
def _handle_errors(action: str):
    """Translate exceptions into exit codes the way every command expects."""
    try:
        yield
    except typer.Exit:
        raise
    except OperationAborted as e:
        logger.info(e.message)
        raise typer.Exit(code=0)
    except KataManagerError as e:
        _report_error(e)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{action} interrupted by user[/yellow]")
        raise typer.Exit(code=130)
    except Exception as e:
        logger.error(f"Unexpected error during {action}: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)


def _settings(ctx: typer.Context) -> KataSettings:
    if isinstance(ctx.obj, KataSettings):
        return ctx.obj
    return load_settings()


def _kube(settings: KataSettings):
    from kata_manager.kube import KubeClient

    return KubeClient.from_kubeconfig(namespace=settings.k8s_namespace)


def _executor(settings: KataSettings, reporter: Reporter):
    from kata_manager.confirm import InteractiveConfirmer
    from kata_manager.remote import ParamikoTransport, RemoteExecutor

    return RemoteExecutor(settings, ParamikoTransport(settings), InteractiveConfirmer(), reporter)


@app.command()
def version() -> None:
    """Show version information."""
    from kata_manager import __version__

    typer.echo(f"kata-manager version {__version__}")


# ---------------------------------------------------------------------------
# Pre-flight checks
# ---------------------------------------------------------------------------


@app.command("prereq-check")
def prereq_check(
    ctx: typer.Context,
    hosts: list[str] | None = typer.Argument(None, help="Hosts to check (default: worker nodes)"),
    all_nodes: bool = typer.Option(False, "--all", help="Include control-plane nodes"),
) -> None:
    """
    Check prerequisites for Kata Containers on cluster nodes (read-only).

    Inspects hardware virtualization, /dev/kvm, kernel modules, kernel version,
    memory and containerd over SSH. Hosts come from the arguments, WORKER_NODES,
    or the cluster's node list, in that order.
    """
    from kata_manager.prereq import PrereqChecker, select_hosts

    settings = _settings(ctx)
    reporter = Reporter(console)
    reporter.banner("Kata Containers - Node Prerequisite Check", "(read-only, no changes will be made)")

    with _handle_errors("prerequisite check"):
        targets = select_hosts(settings, lambda: _kube(settings), hosts or [], all_nodes)
        executor = _executor(settings, reporter)
        try:
            reports = PrereqChecker(executor, reporter).run(targets)
        finally:
            executor.transport.close()

    if any(not r.ok for r in reports):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


def _rollout_table(report) -> Table:
    table = Table(title=f"Rollout ({report.mode.value})")
    table.add_column("Node", style="cyan")
    table.add_column("Outcome")
    table.add_column("Not running (before -> after)", style="yellow")
    table.add_column("Details")

    styles = {
        "succeeded": "green",
        "skipped": "blue",
        "dry-run": "yellow",
        "unprocessed": "dim",
    }
    for result in report.results:
        style = styles.get(result.outcome.value, "red")
        health = ""
        if result.unhealthy_before is not None:
            after = "-" if result.unhealthy_after is None else str(result.unhealthy_after)
            health = f"{result.unhealthy_before} -> {after}"
        table.add_row(
            result.node.name,
            f"[{style}]{result.outcome.value}[/{style}]",
            health,
            result.message,
        )
    return table


@app.command()
def install(
    ctx: typer.Context,
    staged: bool = typer.Option(
        False, "--staged", help="Enable one node at a time with health checks between nodes"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would happen without making changes"
    ),
    failed_node_policy: FailedNodePolicy | None = typer.Option(
        None,
        "--failed-node-policy",
        help="Staged mode: leave or unlabel a node whose installer crashed",
    ),
) -> None:
    """
    Install Kata Containers on the k3s cluster via kata-deploy.

    Examples:
        # Label all workers and wait for the DaemonSet
        kata-mgr install

        # One node at a time, asking between nodes
        kata-mgr install --staged

        # Preview without changes
        kata-mgr install --staged --dry-run
    """
    from kata_manager.confirm import InteractiveConfirmer
    from kata_manager.models.rollout import RolloutMode
    from kata_manager.rollout import RolloutController

    settings = _settings(ctx)
    reporter = Reporter(console)

    with _handle_errors("installation"):
        settings = settings.with_overrides(
            dry_run=True if dry_run else None, failed_node_policy=failed_node_policy
        )
        reporter.banner(
            "Kata Containers - Install on k3s",
            f"Version: {settings.kata_version}",
            *(["Mode: DRY-RUN"] if settings.dry_run else []),
        )
        controller = RolloutController(settings, _kube(settings), InteractiveConfirmer(), reporter)
        report = controller.install(RolloutMode.STAGED if staged else RolloutMode.ALL_AT_ONCE)

    if report.results:
        console.print()
        console.print(_rollout_table(report))

    if not report.ok:
        raise typer.Exit(code=1)

    if not settings.dry_run:
        reporter.info("Next steps:")
        reporter.echo("  - Run 'kata-mgr verify' to deploy a test pod")
        reporter.echo("  - Use 'runtimeClassName: kata' in your pod specs")


# ---------------------------------------------------------------------------
# Uninstall
# ---------------------------------------------------------------------------


@app.command()
def uninstall(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would happen without making changes"
    ),
) -> None:
    """Completely remove Kata Containers from the cluster."""
    from kata_manager.confirm import InteractiveConfirmer
    from kata_manager.uninstall import Uninstaller

    settings = _settings(ctx)
    reporter = Reporter(console)

    with _handle_errors("uninstall"):
        settings = settings.with_overrides(dry_run=True if dry_run else None)
        reporter.banner("Kata Containers - Uninstall from k3s")
        report = Uninstaller(settings, _kube(settings), InteractiveConfirmer(), reporter).run()

    if not report.ok:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@app.command()
def verify(
    ctx: typer.Context,
    skip_pod: bool = typer.Option(False, "--skip-pod", help="Skip the test pod deployment"),
) -> None:
    """
    Verify Kata Containers is working on the cluster.

    Checks RuntimeClasses, the kata-deploy DaemonSet and node labels, then runs
    a test pod under the kata runtime and compares its kernel with the host's.
    """
    from kata_manager.verify import VerificationRunner

    settings = _settings(ctx)
    reporter = Reporter(console)
    reporter.banner("Kata Containers - Verification")

    with _handle_errors("verification"):
        report = VerificationRunner(settings, _kube(settings), reporter).run(skip_canary=skip_pod)

    if not report.ok:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Cluster status & debugging
# ---------------------------------------------------------------------------


@app.command()
def status(ctx: typer.Context) -> None:
    """Show kata-related resources in the cluster."""
    settings = _settings(ctx)

    with _handle_errors("status check"):
        kube = _kube(settings)

        console.print("[bold cyan]RuntimeClasses[/bold cyan]")
        classes = [rc for rc in kube.list_runtime_classes() if "kata" in rc[0]]
        if classes:
            rc_table = Table()
            rc_table.add_column("Name", style="cyan")
            rc_table.add_column("Handler", style="magenta")
            for name, handler in classes:
                rc_table.add_row(name, handler)
            console.print(rc_table)
        else:
            console.print("  (none)")

        console.print(f"\n[bold cyan]{KATA_DEPLOY_NAME} DaemonSet[/bold cyan]")
        ds = kube.daemonset_status(KATA_DEPLOY_NAME)
        if ds is None:
            console.print("  (not deployed)")
        else:
            colour = "green" if ds.rolled_out else "yellow"
            console.print(f"  Ready: [{colour}]{ds}[/{colour}]")

        console.print(f"\n[bold cyan]{KATA_DEPLOY_NAME} Pods[/bold cyan]")
        pods = kube.list_pods(KATA_DEPLOY_SELECTOR)
        if pods:
            pods_table = Table()
            pods_table.add_column("Name", style="cyan")
            pods_table.add_column("Node", style="yellow")
            pods_table.add_column("Phase", style="green")
            pods_table.add_column("Ready")
            for pod in sorted(pods, key=lambda p: p.node_name or ""):
                ready = "[green]✓[/green]" if pod.ready else f"[red]{pod.fatal_reason or '✗'}[/red]"
                pods_table.add_row(pod.name, pod.node_name or "N/A", pod.phase, ready)
            console.print(pods_table)
        else:
            console.print("  (none)")

        console.print("\n[bold cyan]Nodes with kata label[/bold cyan]")
        labeled = kube.list_nodes(f"{KATA_LABEL_KEY}={KATA_LABEL_VALUE}")
        if labeled:
            for node in labeled:
                console.print(f"  - {node}")
        else:
            console.print("  (none)")

        console.print("\n[bold cyan]Test pod[/bold cyan]")
        test_pod = kube.get_pod(TEST_POD_NAME, TEST_POD_NAMESPACE)
        console.print(f"  {test_pod.phase}" if test_pod else "  (not running)")


@app.command()
def logs(
    ctx: typer.Context,
    node: str | None = typer.Option(None, "--node", "-n", help="Only the pod on this node"),
    tail: int = typer.Option(50, "--tail", help="Lines to show per pod"),
    follow: bool = typer.Option(
        False, "--follow", "-f", help="Stream logs live (needs --node when several pods run)"
    ),
) -> None:
    """Show logs from kata-deploy pods."""
    settings = _settings(ctx)

    with _handle_errors("log retrieval"):
        kube = _kube(settings)
        pods = kube.list_pods(KATA_DEPLOY_SELECTOR, node_name=node)
        if not pods:
            where = f" on node {node}" if node else ""
            console.print(f"[yellow]No kata-deploy pod found{where}[/yellow]")
            raise typer.Exit(code=1 if node else 0)

        if follow:
            if len(pods) > 1:
                console.print(
                    f"[yellow]{len(pods)} kata-deploy pods are running; pick one with --node[/yellow]"
                )
                raise typer.Exit(code=1)
            pod = pods[0]
            console.print(f"[bold]==> {pod.name} ({pod.node_name}) <==[/bold]")
            for line in kube.stream_pod_logs(pod.name, settings.k8s_namespace):
                typer.echo(line)
            return

        for pod in pods:
            console.print(f"[bold]==> {pod.name} ({pod.node_name}) <==[/bold]")
            typer.echo(kube.pod_logs(pod.name, settings.k8s_namespace, tail_lines=tail))


@app.command()
def describe(ctx: typer.Context) -> None:
    """Describe the kata-deploy DaemonSet."""
    settings = _settings(ctx)
    with _handle_errors("describe"):
        typer.echo(_kube(settings).describe_daemonset(KATA_DEPLOY_NAME))


@app.command("kata-shell")
def kata_shell(ctx: typer.Context) -> None:
    """Open a shell in a new pod running under the kata runtime."""
    settings = _settings(ctx)
    args = [
        "run",
        "kata-debug",
        "--rm",
        "-it",
        "--restart=Never",
        "--image=ubuntu:22.04",
        '--overrides={"spec":{"runtimeClassName":"kata"}}',
        "--",
        "bash",
    ]
    if settings.dry_run:
        Reporter(console).dry_run(f"Would run: kubectl {' '.join(args)}")
        return
    with _handle_errors("kata shell"):
        code = _kube(settings).run_interactive(args)
    if code:
        raise typer.Exit(code=code)


@app.command("test-logs")
def test_logs(ctx: typer.Context) -> None:
    """Show the test pod logs."""
    settings = _settings(ctx)
    with _handle_errors("log retrieval"):
        typer.echo(_kube(settings).pod_logs(TEST_POD_NAME, TEST_POD_NAMESPACE))


@app.command("clean-test")
def clean_test(ctx: typer.Context) -> None:
    """Delete the test pod."""
    settings = _settings(ctx)
    reporter = Reporter(console)
    if settings.dry_run:
        reporter.dry_run(f"Would delete pod {TEST_POD_NAMESPACE}/{TEST_POD_NAME}")
        return
    with _handle_errors("cleanup"):
        if _kube(settings).delete_pod(TEST_POD_NAME, TEST_POD_NAMESPACE):
            reporter.ok("Test pod removed")
        else:
            reporter.info("Test pod not found")


# ---------------------------------------------------------------------------
# SSH node access (read-only checks)
# ---------------------------------------------------------------------------

NODE_INSPECTIONS = {
    "kvm": "ls -la /dev/kvm && lsmod | grep kvm",
    "containerd": (
        "cat /var/lib/rancher/k3s/agent/etc/containerd/config.toml.tmpl 2>/dev/null "
        "|| echo config.toml.tmpl not found; echo ---; "
        "cat /var/lib/rancher/k3s/agent/etc/containerd/config.toml 2>/dev/null "
        "|| echo config.toml not found"
    ),
    "kata": (
        "ls -la /opt/kata/bin/ 2>/dev/null && /opt/kata/bin/kata-runtime --version 2>/dev/null "
        "|| echo Kata not found on this node"
    ),
}


def _inspect_node(ctx: typer.Context, host: str, inspection: str) -> None:
    settings = _settings(ctx)
    reporter = Reporter(console)
    with _handle_errors("node inspection"):
        executor = _executor(settings, reporter)
        try:
            output = executor.run(host, NODE_INSPECTIONS[inspection])
        finally:
            executor.transport.close()
        if output:
            typer.echo(output)


@app.command("check-kvm")
def check_kvm(ctx: typer.Context, node: str = typer.Argument(..., help="Node address")) -> None:
    """Check if a node has KVM support."""
    _inspect_node(ctx, node, "kvm")


@app.command("check-containerd")
def check_containerd(
    ctx: typer.Context, node: str = typer.Argument(..., help="Node address")
) -> None:
    """Show the k3s containerd config on a node."""
    _inspect_node(ctx, node, "containerd")


@app.command("check-kata-node")
def check_kata_node(
    ctx: typer.Context, node: str = typer.Argument(..., help="Node address")
) -> None:
    """Check the Kata installation on a node."""
    _inspect_node(ctx, node, "kata")


if __name__ == "__main__":
    app()
