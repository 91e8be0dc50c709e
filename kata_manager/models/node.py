"""Data models for cluster nodes and the workloads running on them."""

from pydantic import BaseModel, Field, field_validator

# Container waiting reasons that will not resolve without operator intervention
FATAL_WAITING_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)

HEALTHY_POD_PHASES = frozenset({"Running", "Succeeded"})


class ClusterNode(BaseModel):
    """A Kubernetes node as seen by the installer."""

    name: str
    address: str | None = None
    role: str = "worker"  # control-plane or worker
    kata_enabled: bool = False
    kernel_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either control-plane or worker."""
        allowed_roles = ["control-plane", "worker"]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @property
    def is_control_plane(self) -> bool:
        return self.role == "control-plane"

    def __str__(self) -> str:
        return self.name if not self.address else f"{self.name} ({self.address})"


class PodState(BaseModel):
    """The subset of pod status the installer inspects."""

    name: str
    namespace: str
    node_name: str | None = None
    phase: str = "Unknown"
    ready: bool = False
    waiting_reasons: list[str] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.phase in HEALTHY_POD_PHASES

    @property
    def fatal_reason(self) -> str | None:
        """First waiting reason that indicates a crash or image failure."""
        return next((r for r in self.waiting_reasons if r in FATAL_WAITING_REASONS), None)


class DaemonSetStatus(BaseModel):
    """Scheduling counts for a DaemonSet."""

    name: str
    desired: int = 0
    ready: int = 0

    @property
    def rolled_out(self) -> bool:
        return self.desired > 0 and self.ready == self.desired

    def __str__(self) -> str:
        return f"{self.ready}/{self.desired}"
