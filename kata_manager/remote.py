"""Read-only remote host inspection over SSH.

Every command is logged before it runs. Commands that look like they could
change the remote system need operator confirmation unless the caller passes
``allow_write=True``. The classifier is a heuristic: it errs toward prompting,
and a mutating command that matches no rule will run without a prompt.
"""

import re
from dataclasses import dataclass
from typing import Protocol

import paramiko
from pydantic import BaseModel

from kata_manager.config import KataSettings
from kata_manager.confirm import Confirmer
from kata_manager.exceptions import (
    CommandDeclinedError,
    RemoteCommandError,
    RemoteConnectionError,
)
from kata_manager.logging_config import get_logger
from kata_manager.reporting import Reporter

logger = get_logger(__name__)


@dataclass(frozen=True)
class RiskRule:
    """A pattern whose presence suggests a command may mutate the host."""

    pattern: str
    description: str

    def matches(self, command: str) -> bool:
        return re.search(self.pattern, command, re.IGNORECASE) is not None


DEFAULT_RISK_RULES: tuple[RiskRule, ...] = (
    RiskRule(r"install", "package or file installation"),
    RiskRule(r"remove", "removal"),
    RiskRule(r"rm ", "file deletion"),
    RiskRule(r"mv ", "file move"),
    RiskRule(r"cp ", "file copy"),
    RiskRule(r"dd ", "raw block copy"),
    RiskRule(r"mkfs", "filesystem creation"),
    RiskRule(r"umount", "filesystem unmount"),
    RiskRule(r"mount", "filesystem mount"),
    RiskRule(r"systemctl", "service control"),
    RiskRule(r"apt", "apt package manager"),
    RiskRule(r"yum", "yum package manager"),
    RiskRule(r"dnf", "dnf package manager"),
    RiskRule(r"snap", "snap package manager"),
    RiskRule(r"chmod", "permission change"),
    RiskRule(r"chown", "ownership change"),
    RiskRule(r"tee ", "write via tee"),
    RiskRule(r">>", "append redirection"),
    RiskRule(r"> ", "output redirection"),
)


class CommandRiskAssessment(BaseModel):
    """Classification of one command string."""

    command: str
    needs_confirmation: bool
    matched_pattern: str | None = None
    reason: str | None = None


def classify(command: str, rules=DEFAULT_RISK_RULES) -> CommandRiskAssessment:
    """Classify a command against an ordered rule list; the first match wins."""
    for rule in rules:
        if rule.matches(command):
            return CommandRiskAssessment(
                command=command,
                needs_confirmation=True,
                matched_pattern=rule.pattern,
                reason=rule.description,
            )
    return CommandRiskAssessment(command=command, needs_confirmation=False)


@dataclass(frozen=True)
class CommandOutput:
    exit_status: int
    stdout: str
    stderr: str = ""


class Transport(Protocol):
    def execute(self, host: str, command: str) -> CommandOutput: ...

    def close(self) -> None: ...


class ParamikoTransport:
    """SSH transport with one cached connection per host.

    Known host keys are loaded from the system; unknown hosts are accepted and
    a changed key is rejected, matching ``StrictHostKeyChecking=accept-new``.
    """

    def __init__(self, settings: KataSettings, command_timeout: float = 60):
        self.settings = settings
        self.command_timeout = command_timeout
        self._clients: dict[str, paramiko.SSHClient] = {}

    def _connect(self, host: str) -> paramiko.SSHClient:
        if host in self._clients:
            return self._clients[host]

        target = f"{self.settings.ssh_user}@{host}:{self.settings.ssh_port}"
        logger.debug(f"Opening SSH connection to {target}")

        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key = self.settings.ssh_key
        timeout = self.settings.ssh_connect_timeout

        try:
            ssh.connect(
                host,
                port=self.settings.ssh_port,
                username=self.settings.ssh_user,
                key_filename=str(key.expanduser()) if key else None,
                look_for_keys=key is None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
            )
        except paramiko.BadHostKeyException:
            ssh.close()
            raise RemoteConnectionError(
                f"Host key for {host} does not match known_hosts",
                "The host may have been reinstalled, or the connection is being intercepted. "
                "Verify the key and update ~/.ssh/known_hosts.",
            )
        except paramiko.AuthenticationException:
            ssh.close()
            raise RemoteConnectionError(
                f"SSH authentication failed for {target}",
                "Check SSH_USER and SSH_KEY in your environment or .env file",
            )
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise RemoteConnectionError(f"Cannot connect to {target}", str(e))

        self._clients[host] = ssh
        return ssh

    def execute(self, host: str, command: str) -> CommandOutput:
        ssh = self._connect(host)
        try:
            _, stdout, stderr = ssh.exec_command(command, timeout=self.command_timeout)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            self._clients.pop(host, None)
            ssh.close()
            raise RemoteConnectionError(f"SSH session to {host} failed", str(e))
        logger.debug(f"[{host}] exit status {exit_status}")
        return CommandOutput(exit_status=exit_status, stdout=out, stderr=err)

    def close(self) -> None:
        for ssh in self._clients.values():
            ssh.close()
        self._clients.clear()

    def __enter__(self) -> "ParamikoTransport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RemoteExecutor:
    """Runs commands on cluster hosts behind the risk classifier."""

    def __init__(
        self,
        settings: KataSettings,
        transport: Transport,
        confirmer: Confirmer,
        reporter: Reporter | None = None,
        rules=DEFAULT_RISK_RULES,
    ):
        self.settings = settings
        self.transport = transport
        self.confirmer = confirmer
        self.reporter = reporter or Reporter()
        self.rules = rules

    def run(self, host: str, command: str, allow_write: bool = False) -> str:
        """Execute ``command`` on ``host`` and return its stripped stdout.

        Raises:
            CommandDeclinedError: The operator declined a flagged command
            RemoteCommandError: The command exited non-zero
            RemoteConnectionError: The host could not be reached
        """
        target = f"{self.settings.ssh_user}@{host}"
        self.reporter.info(f"SSH → {target}: {command}")

        if self.settings.dry_run:
            self.reporter.dry_run(f"Would execute on {target}: {command}")
            return ""

        if not allow_write:
            assessment = classify(command, self.rules)
            if assessment.needs_confirmation:
                self.reporter.warn("This command may modify the remote system:")
                self.reporter.echo(f"  Host:    {host}")
                self.reporter.echo(f"  Command: {command}")
                self.reporter.echo(f"  Reason:  {assessment.reason}")
                if not self.confirmer.confirm("Proceed?", default=False):
                    self.reporter.warn("Skipped.")
                    raise CommandDeclinedError(
                        f"Command on {host} was not confirmed", f"Command: {command}"
                    )

        result = self.transport.execute(host, command)
        if result.exit_status != 0:
            logger.debug(f"[{host}] '{command}' failed: {result.stderr.strip()}")
            raise RemoteCommandError(
                f"Command failed on {host} with exit status {result.exit_status}",
                result.stderr.strip() or None,
                exit_status=result.exit_status,
            )
        return result.stdout.strip()

    def succeeds(self, host: str, command: str) -> bool:
        """Run a test-style command; a non-zero exit means False."""
        try:
            self.run(host, command)
        except RemoteCommandError:
            return False
        return True
