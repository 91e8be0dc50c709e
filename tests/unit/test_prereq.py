"""Unit tests for node prerequisite checks."""

import pytest
from conftest import FakeKube, FakeTransport, make_node

from kata_manager.config import KataSettings
from kata_manager.confirm import StaticConfirmer
from kata_manager.exceptions import KataManagerError, RemoteConnectionError
from kata_manager.models.verification import CheckStatus
from kata_manager.prereq import (
    PrereqChecker,
    parse_int,
    parse_kernel_version,
    probe_commands,
    select_hosts,
)
from kata_manager.remote import CommandOutput, RemoteExecutor

HEALTHY_HOST = {
    "os-release": CommandOutput(0, 'NAME="Ubuntu" VERSION_ID="22.04" '),
    "uname -r": CommandOutput(0, "5.15.0-91-generic\n"),
    "MemTotal": CommandOutput(0, "16318412\n"),
    "nproc": CommandOutput(0, "8\n"),
    "vmx": CommandOutput(0, "8\n"),
    "/dev/kvm": CommandOutput(0, ""),
    "lsmod": CommandOutput(0, ""),
    "pgrep": CommandOutput(0, ""),
}


def checker_for(responses, reporter, confirmer=None, dry_run=False):
    settings = KataSettings(_env_file=None, dry_run=dry_run)
    transport = FakeTransport(responses)
    executor = RemoteExecutor(settings, transport, confirmer or StaticConfirmer(False), reporter)
    return PrereqChecker(executor, reporter), transport


def statuses(report):
    return {c.name: c.status for c in report.checks}


def test_parse_kernel_version():
    assert parse_kernel_version("5.15.0-91-generic") == (5, 15)
    assert parse_kernel_version("6.1.62") == (6, 1)
    assert parse_kernel_version("5.x") is None
    assert parse_kernel_version("garbage") is None


def test_parse_int():
    assert parse_int("  42\nmore") == 42
    assert parse_int("") is None
    assert parse_int("n/a") is None


def test_healthy_host_passes(reporter):
    checker, _ = checker_for(HEALTHY_HOST, reporter)

    report = checker.check_host("10.0.0.11")

    assert report.ok
    result = statuses(report)
    assert result["virtualization"] == CheckStatus.OK
    assert result["dev-kvm"] == CheckStatus.OK
    assert result["kvm-module"] == CheckStatus.OK
    assert result["kernel"] == CheckStatus.OK
    assert result["memory"] == CheckStatus.OK
    assert result["containerd"] == CheckStatus.OK


def test_missing_virtualization_fails_host(reporter):
    responses = {
        **HEALTHY_HOST,
        "vmx": CommandOutput(0, "0\n"),
        "/dev/kvm": CommandOutput(1, ""),
        "lsmod": CommandOutput(1, ""),
    }
    checker, _ = checker_for(responses, reporter)

    report = checker.check_host("10.0.0.11")

    assert not report.ok
    result = statuses(report)
    assert result["virtualization"] == CheckStatus.FAIL
    assert result["dev-kvm"] == CheckStatus.FAIL
    assert result["kvm-module"] == CheckStatus.FAIL


def test_old_kernel_and_low_memory_only_warn(reporter):
    responses = {
        **HEALTHY_HOST,
        "uname -r": CommandOutput(0, "4.19.0-25-amd64\n"),
        "MemTotal": CommandOutput(0, "1019516\n"),
    }
    checker, _ = checker_for(responses, reporter)

    report = checker.check_host("10.0.0.11")

    assert report.ok
    assert statuses(report)["kernel"] == CheckStatus.WARN
    assert statuses(report)["memory"] == CheckStatus.WARN


def test_service_probe_requires_confirmation(reporter):
    responses = {**HEALTHY_HOST, "pgrep": CommandOutput(1, "")}
    confirmer = StaticConfirmer(False)
    checker, transport = checker_for(responses, reporter, confirmer)

    report = checker.check_host("10.0.0.11")

    assert statuses(report)["containerd"] == CheckStatus.WARN
    assert len(confirmer.prompts) == 1
    assert not any("systemctl" in cmd for _, cmd in transport.calls)


def test_failing_informational_command_warns(reporter):
    responses = {**HEALTHY_HOST, "os-release": CommandOutput(1, "", "permission denied")}
    checker, _ = checker_for(responses, reporter)

    report = checker.check_host("10.0.0.11")

    assert report.ok
    assert statuses(report)["check_os"] == CheckStatus.WARN


def test_unreachable_host_propagates(reporter):
    responses = {"os-release": RemoteConnectionError("Cannot connect to ubuntu@10.0.0.99:22")}
    checker, _ = checker_for(responses, reporter)

    with pytest.raises(RemoteConnectionError):
        checker.check_host("10.0.0.99")


def test_dry_run_runs_no_commands(reporter):
    checker, transport = checker_for(HEALTHY_HOST, reporter, dry_run=True)

    reports = checker.run(["10.0.0.11", "10.0.0.12"])

    assert transport.calls == []
    assert all(r.ok for r in reports)


def test_dry_run_lists_every_command_per_host(reporter):
    checker, _ = checker_for(HEALTHY_HOST, reporter, dry_run=True)

    checker.check_host("10.0.0.11")

    output = reporter.console.export_text()
    for command in probe_commands():
        assert f"[DRY-RUN] Would execute on ubuntu@10.0.0.11: {command}" in output


def test_run_without_hosts_is_an_error(reporter):
    checker, _ = checker_for(HEALTHY_HOST, reporter)

    with pytest.raises(KataManagerError, match="No nodes found"):
        checker.run([])


class TestSelectHosts:
    def _kube(self):
        return FakeKube(
            [
                make_node("cp", "10.0.0.10", role="control-plane"),
                make_node("w1", "10.0.0.11"),
                make_node("w2"),
            ]
        )

    def test_explicit_hosts_win(self):
        settings = KataSettings(_env_file=None, worker_nodes="10.0.0.11")

        def no_discovery():
            raise AssertionError("cluster should not be queried")

        assert select_hosts(settings, no_discovery, ["a", "b"], False) == ["a", "b"]

    def test_worker_nodes_setting_used_next(self):
        settings = KataSettings(_env_file=None, worker_nodes="10.0.0.11,10.0.0.12")
        assert select_hosts(settings, self._kube, [], False) == ["10.0.0.11", "10.0.0.12"]

    def test_discovery_prefers_addresses_and_skips_control_plane(self):
        settings = KataSettings(_env_file=None, worker_nodes="")
        assert select_hosts(settings, self._kube, [], False) == ["10.0.0.11", "w2"]

    def test_discovery_with_all_includes_control_plane(self):
        settings = KataSettings(_env_file=None, worker_nodes="")
        assert select_hosts(settings, self._kube, [], True) == ["10.0.0.10", "10.0.0.11", "w2"]
