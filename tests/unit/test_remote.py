"""Unit tests for remote command execution and the risk classifier."""

from unittest.mock import MagicMock, patch

import paramiko
import pytest
from conftest import FakeTransport, ScriptedConfirmer

from kata_manager.config import KataSettings
from kata_manager.confirm import StaticConfirmer
from kata_manager.exceptions import (
    CommandDeclinedError,
    RemoteCommandError,
    RemoteConnectionError,
)
from kata_manager.remote import (
    CommandOutput,
    ParamikoTransport,
    RemoteExecutor,
    RiskRule,
    classify,
)


@pytest.fixture
def ssh_settings():
    return KataSettings(_env_file=None, ssh_user="ubuntu", dry_run=False)


class TestClassify:
    @pytest.mark.parametrize(
        "command",
        [
            "uname -r",
            "nproc",
            "grep -cE '(vmx|svm)' /proc/cpuinfo 2>/dev/null || echo 0",
            "test -c /dev/kvm",
            "lsmod | grep -q '^kvm '",
        ],
    )
    def test_read_only_commands_need_no_confirmation(self, command):
        assert not classify(command).needs_confirmation

    @pytest.mark.parametrize(
        "command,pattern",
        [
            ("sudo apt-get install -y qemu", "install"),
            ("rm -rf /opt/kata", "rm "),
            ("echo hi > /etc/motd", "> "),
            ("echo hi >> /etc/motd", ">>"),
            ("sudo systemctl restart k3s-agent", "systemctl"),
            ("SUDO CHMOD 777 /dev/kvm", "chmod"),
        ],
    )
    def test_mutating_commands_need_confirmation(self, command, pattern):
        assessment = classify(command)
        assert assessment.needs_confirmation
        assert assessment.matched_pattern == pattern

    def test_first_matching_rule_wins(self):
        rules = (RiskRule("foo", "first"), RiskRule("foo bar", "second"))
        assert classify("foo bar", rules).reason == "first"

    def test_mount_substring_of_umount_reports_umount(self):
        assert classify("umount /mnt").matched_pattern == "umount"


class TestRemoteExecutor:
    def test_read_only_command_runs_without_prompt(self, ssh_settings, reporter):
        transport = FakeTransport({"uname": CommandOutput(0, "5.15.0-91-generic\n")})
        confirmer = StaticConfirmer(False)
        executor = RemoteExecutor(ssh_settings, transport, confirmer, reporter)

        assert executor.run("10.0.0.11", "uname -r") == "5.15.0-91-generic"
        assert confirmer.prompts == []
        assert "SSH → ubuntu@10.0.0.11: uname -r" in reporter.console.export_text()

    def test_declined_command_is_not_executed(self, ssh_settings, reporter):
        transport = FakeTransport()
        executor = RemoteExecutor(ssh_settings, transport, ScriptedConfirmer(False), reporter)

        with pytest.raises(CommandDeclinedError):
            executor.run("10.0.0.11", "sudo systemctl restart containerd")

        assert transport.calls == []

    def test_confirmed_command_is_executed(self, ssh_settings, reporter):
        transport = FakeTransport()
        confirmer = ScriptedConfirmer(True)
        executor = RemoteExecutor(ssh_settings, transport, confirmer, reporter)

        executor.run("10.0.0.11", "systemctl is-active containerd")

        assert transport.calls == [("10.0.0.11", "systemctl is-active containerd")]
        assert confirmer.prompts == [("Proceed?", False)]

    def test_allow_write_skips_classifier(self, ssh_settings, reporter):
        transport = FakeTransport()
        confirmer = StaticConfirmer(False)
        executor = RemoteExecutor(ssh_settings, transport, confirmer, reporter)

        executor.run("10.0.0.11", "rm -f /tmp/scratch", allow_write=True)

        assert confirmer.prompts == []
        assert len(transport.calls) == 1

    def test_non_zero_exit_raises(self, ssh_settings, reporter):
        transport = FakeTransport(default=CommandOutput(2, "", "no such file\n"))
        executor = RemoteExecutor(ssh_settings, transport, StaticConfirmer(True), reporter)

        with pytest.raises(RemoteCommandError) as exc_info:
            executor.run("10.0.0.11", "cat /nonexistent")

        assert exc_info.value.exit_status == 2
        assert exc_info.value.details == "no such file"

    def test_succeeds_maps_exit_status_to_bool(self, ssh_settings, reporter):
        transport = FakeTransport({"/dev/kvm": CommandOutput(1, "")})
        executor = RemoteExecutor(ssh_settings, transport, StaticConfirmer(True), reporter)

        assert not executor.succeeds("h", "test -c /dev/kvm")
        assert executor.succeeds("h", "true")

    def test_dry_run_never_touches_transport(self, reporter):
        settings = KataSettings(_env_file=None, dry_run=True)
        transport = FakeTransport()
        executor = RemoteExecutor(settings, transport, StaticConfirmer(False), reporter)

        assert executor.run("10.0.0.11", "rm -rf /") == ""
        assert transport.calls == []


class TestParamikoTransport:
    def _mock_session(self, ssh, stdout=b"", stderr=b"", status=0):
        out, err = MagicMock(), MagicMock()
        out.read.return_value = stdout
        out.channel.recv_exit_status.return_value = status
        err.read.return_value = stderr
        ssh.exec_command.return_value = (MagicMock(), out, err)

    def test_execute_returns_output_and_reuses_connection(self, ssh_settings):
        with patch("kata_manager.remote.paramiko.SSHClient") as client_cls:
            ssh = client_cls.return_value
            self._mock_session(ssh, stdout=b"4\n")

            transport = ParamikoTransport(ssh_settings)
            first = transport.execute("10.0.0.11", "nproc")
            transport.execute("10.0.0.11", "nproc")

        assert first == CommandOutput(exit_status=0, stdout="4\n", stderr="")
        assert client_cls.call_count == 1
        ssh.connect.assert_called_once()
        assert ssh.connect.call_args.kwargs["username"] == "ubuntu"

    def test_explicit_key_disables_key_search(self, tmp_path):
        key = tmp_path / "id_ed25519"
        settings = KataSettings(_env_file=None, ssh_key=key)
        with patch("kata_manager.remote.paramiko.SSHClient") as client_cls:
            ssh = client_cls.return_value
            self._mock_session(ssh)
            ParamikoTransport(settings).execute("h", "true")

        kwargs = ssh.connect.call_args.kwargs
        assert kwargs["key_filename"] == str(key)
        assert kwargs["look_for_keys"] is False

    def test_authentication_failure(self, ssh_settings):
        with patch("kata_manager.remote.paramiko.SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = paramiko.AuthenticationException("denied")

            with pytest.raises(RemoteConnectionError, match="authentication failed"):
                ParamikoTransport(ssh_settings).execute("10.0.0.11", "nproc")

    def test_unreachable_host(self, ssh_settings):
        with patch("kata_manager.remote.paramiko.SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = OSError("No route to host")

            with pytest.raises(RemoteConnectionError, match="Cannot connect"):
                ParamikoTransport(ssh_settings).execute("10.0.0.11", "nproc")

    def test_close_closes_cached_clients(self, ssh_settings):
        with patch("kata_manager.remote.paramiko.SSHClient") as client_cls:
            ssh = client_cls.return_value
            self._mock_session(ssh)
            with ParamikoTransport(ssh_settings) as transport:
                transport.execute("h", "true")

        ssh.close.assert_called_once()
