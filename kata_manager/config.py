"""Runtime configuration sourced from the environment and an optional .env file."""

import re
from enum import Enum
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kata_manager.exceptions import ConfigurationError

BUNDLED_MANIFESTS_DIR = Path(__file__).parent / "bundled_manifests"

KATA_LABEL_KEY = "katacontainers.io/kata-runtime"
KATA_LABEL_VALUE = "true"
KATA_DEPLOY_NAME = "kata-deploy"
KATA_CLEANUP_NAME = "kata-cleanup"
KATA_DEPLOY_SELECTOR = "app=kata-deploy"
TEST_POD_NAME = "kata-test"
TEST_POD_NAMESPACE = "default"


class FailedNodePolicy(str, Enum):
    """What to do with the enabling label of a node whose installer crashed."""

    LEAVE = "leave"
    UNLABEL = "unlabel"


class KataSettings(BaseSettings):
    """Immutable settings for one invocation.

    Field names map case-insensitively onto environment variables such as
    KATA_VERSION, SSH_USER and WORKER_NODES.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    kata_version: str = "3.12.0"
    ssh_user: str = "ubuntu"
    ssh_key: Path | None = None
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout: float = Field(default=10, gt=0)
    worker_nodes: str = ""
    k8s_namespace: str = "kube-system"
    dry_run: bool = False
    manifests_dir: Path = BUNDLED_MANIFESTS_DIR
    install_timeout: float = Field(default=600, ge=0)
    node_timeout: float = Field(default=300, ge=0)
    poll_interval: float = Field(default=10, gt=0)
    failed_node_policy: FailedNodePolicy = FailedNodePolicy.LEAVE

    @field_validator("kata_version")
    @classmethod
    def validate_kata_version(cls, v: str) -> str:
        """Validate the Kata release looks like a semantic version."""
        if not re.match(r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$", v):
            raise ValueError(f"kata_version '{v}' must follow semantic versioning (e.g., 3.12.0)")
        return v

    @field_validator("k8s_namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Validate the namespace is a DNS-1123 label."""
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", v):
            raise ValueError(f"k8s_namespace '{v}' is not a valid namespace name")
        return v

    @field_validator("ssh_key", mode="before")
    @classmethod
    def empty_key_is_unset(cls, v):
        if v in ("", None):
            return None
        return v

    @property
    def worker_list(self) -> list[str]:
        """Explicit worker entries from WORKER_NODES, in order."""
        return [entry.strip() for entry in self.worker_nodes.split(",") if entry.strip()]

    def with_overrides(self, **updates) -> "KataSettings":
        """Return a copy with the given fields replaced, ignoring None values."""
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            return self
        try:
            return self.model_validate({**self.model_dump(), **updates})
        except ValidationError as e:
            raise ConfigurationError("Invalid configuration override", str(e))


def load_settings(**overrides) -> KataSettings:
    """Build the settings object once at process start.

    Raises:
        ConfigurationError: If the environment holds invalid values
    """
    try:
        settings = KataSettings()
    except ValidationError as e:
        problems = "\n".join(
            f"  - {'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError("Invalid configuration", problems)
    return settings.with_overrides(**overrides)
