"""Data models for nodes, rollouts and verification."""

from kata_manager.models.node import ClusterNode, DaemonSetStatus, PodState
from kata_manager.models.rollout import (
    NodeOutcome,
    NodeResult,
    RolloutMode,
    RolloutPlan,
    RolloutReport,
)
from kata_manager.models.verification import (
    CheckResult,
    CheckStatus,
    NodeCheckReport,
    VerificationReport,
    VerificationResult,
    Verdict,
)

__all__ = [
    "ClusterNode",
    "DaemonSetStatus",
    "PodState",
    "NodeOutcome",
    "NodeResult",
    "RolloutMode",
    "RolloutPlan",
    "RolloutReport",
    "CheckResult",
    "CheckStatus",
    "NodeCheckReport",
    "VerificationReport",
    "VerificationResult",
    "Verdict",
]
