"""Data models for node rollout plans and their results."""

from enum import Enum

from pydantic import BaseModel, Field

from kata_manager.models.node import ClusterNode


class RolloutMode(str, Enum):
    ALL_AT_ONCE = "all-at-once"
    STAGED = "staged"


class NodeOutcome(str, Enum):
    """Terminal state of one node in a rollout."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"  # already labeled before this run
    CRASH_FAILED = "crash-failed"
    TIMEOUT_FAILED = "timeout-failed"
    UNPROCESSED = "unprocessed"
    DRY_RUN = "dry-run"

    @property
    def failed(self) -> bool:
        return self in (NodeOutcome.CRASH_FAILED, NodeOutcome.TIMEOUT_FAILED)


class NodeResult(BaseModel):
    """What happened to one node."""

    node: ClusterNode
    outcome: NodeOutcome
    unhealthy_before: int | None = None
    unhealthy_after: int | None = None
    message: str = ""

    @property
    def health_delta(self) -> int | None:
        if self.unhealthy_before is None or self.unhealthy_after is None:
            return None
        return self.unhealthy_after - self.unhealthy_before


class RolloutPlan(BaseModel):
    """Ordered nodes to enable and a cursor marking the next unprocessed one."""

    nodes: list[ClusterNode]
    mode: RolloutMode
    cursor: int = 0

    @property
    def finished(self) -> bool:
        return self.cursor >= len(self.nodes)

    @property
    def remaining(self) -> list[ClusterNode]:
        return self.nodes[self.cursor :]

    def next_node(self) -> ClusterNode:
        node = self.nodes[self.cursor]
        self.cursor += 1
        return node


class RolloutReport(BaseModel):
    """Summary of a rollout run."""

    mode: RolloutMode
    results: list[NodeResult] = Field(default_factory=list)
    timed_out: bool = False
    message: str = ""

    def _count(self, *outcomes: NodeOutcome) -> int:
        return sum(1 for r in self.results if r.outcome in outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(NodeOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(NodeOutcome.CRASH_FAILED, NodeOutcome.TIMEOUT_FAILED)

    @property
    def unprocessed(self) -> int:
        return self._count(NodeOutcome.UNPROCESSED)

    @property
    def skipped(self) -> int:
        return self._count(NodeOutcome.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.failed == 0 and self.unprocessed == 0

    def outcome_of(self, node_name: str) -> NodeOutcome | None:
        return next((r.outcome for r in self.results if r.node.name == node_name), None)
