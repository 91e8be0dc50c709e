"""Data models for verification and prerequisite checks."""

from enum import Enum

from pydantic import BaseModel, Field


class Verdict(str, Enum):
    ISOLATED = "isolated"
    NOT_ISOLATED = "not-isolated"
    INDETERMINATE = "indeterminate"


class CheckStatus(str, Enum):
    OK = "ok"
    INFO = "info"
    WARN = "warn"
    FAIL = "fail"


class CheckResult(BaseModel):
    """Outcome of one named check."""

    name: str
    status: CheckStatus
    message: str = ""

    @property
    def critical_failure(self) -> bool:
        return self.status == CheckStatus.FAIL


class VerificationResult(BaseModel):
    """Host and guest kernel identities observed by the canary pod."""

    host_kernel: str | None = None
    guest_kernel: str | None = None
    verdict: Verdict


class VerificationReport(BaseModel):
    checks: list[CheckResult] = Field(default_factory=list)
    canary: VerificationResult | None = None

    @property
    def failed(self) -> int:
        return sum(1 for c in self.checks if c.critical_failure)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class NodeCheckReport(BaseModel):
    """Prerequisite check results for one host."""

    host: str
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(c.critical_failure for c in self.checks)
