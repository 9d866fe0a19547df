"""Execution state models.

An ExecutionRecord is the complete, persisted state of one run. It is written
only by the GraphOrchestrator; every other reader works on a deep copy.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from agentflow.core.graph_schema import Edge


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class ExecutionStatus(str, Enum):
    """Lifecycle of a run."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class NodeResultStatus(str, Enum):
    """Outcome of a single node attempt."""

    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"  # Attempt failed, another one was scheduled
    ABANDONED = "abandoned"  # Dropped when its parallel region resolved early


class NodeResult(BaseModel):
    """One entry of the append-only attempt log."""

    node_id: str
    token_id: str
    attempt: int = 1
    status: NodeResultStatus
    started_at: datetime | None = None
    completed_at: datetime = Field(default_factory=_utc_now)
    output: Any = None
    error: str | None = None
    agent: str | None = None


class ScopeRef(BaseModel):
    """Membership of a token in a parallel region or loop iteration."""

    scope_id: str
    branch: str  # Branch entry node id (parallel) or iteration number (loop)


class ApprovalResolution(BaseModel):
    """External decision attached to a suspended approval token."""

    decision: Literal["approved", "rejected", "timeout"]
    approver: str | None = None
    data: Any = None  # Edited payload; None keeps the original input
    comment: str | None = None


class Token(BaseModel):
    """A unit of pending work: one activation of one node."""

    id: str = Field(default_factory=_new_id)
    node_id: str
    input: Any = None
    scope: list[ScopeRef] = Field(default_factory=list)  # Innermost last
    attempt: int = 1
    not_before: datetime | None = None  # Retry delay
    agent_override: str | None = None
    fallback_index: int = 0  # Node fallback agents already used
    workflow_fallback_used: bool = False
    resume_scope: str | None = None  # Scope whose completion re-invoked this token
    approval: ApprovalResolution | None = None


class BranchState(BaseModel):
    status: Literal["running", "completed", "failed", "abandoned"] = "running"
    output: Any = None
    error: str | None = None


class Scope(BaseModel):
    """State of an active parallel region or loop instance.

    Scopes are pushed when a PARALLEL or LOOP node first runs and popped when
    that node proceeds or fails, so nested loops keep independent counters.
    """

    id: str = Field(default_factory=_new_id)
    kind: Literal["parallel", "loop"]
    node_id: str
    owner_token_id: str
    resolved: bool = False  # Region settled, owner re-queued

    # Parallel
    completion: Literal["all", "any"] = "all"
    branches: dict[str, BranchState] = Field(default_factory=dict)

    # Loop
    iteration: int = 0  # Iterations started so far
    items: list[Any] | None = None  # foreach collection
    total: int | None = None  # fixed_count target
    loop_input: Any = None
    current_input: Any = None  # Output of the last successful iteration
    results: list[Any] = Field(default_factory=list)
    last_error: str | None = None


class SuspendedNode(BaseModel):
    """A token parked until an approval decision or its region settles."""

    token: Token
    reason: Literal["approval", "parallel", "loop"]
    scope_id: str | None = None


class PendingApproval(BaseModel):
    node_id: str
    token_id: str
    prompt: str = ""
    approvers: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=_utc_now)
    expires_at: datetime
    data: Any = None  # The input awaiting approval


class ExecutionRecord(BaseModel):
    """Complete persisted state of a single run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    graph_id: str
    workflow_name: str = ""
    status: ExecutionStatus = ExecutionStatus.RUNNING

    frontier: list[Token] = Field(default_factory=list)
    suspended: list[SuspendedNode] = Field(default_factory=list)
    scopes: dict[str, Scope] = Field(default_factory=dict)
    node_results: list[NodeResult] = Field(default_factory=list)
    pending_approvals: list[PendingApproval] = Field(default_factory=list)

    initial_input: Any = None
    final_output: Any = None
    error: str | None = None

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def frontier_ids(self) -> set[str]:
        """Node ids currently eligible for execution."""
        return {t.node_id for t in self.frontier}

    @property
    def loop_counters(self) -> dict[str, int]:
        """Current iteration of every active loop, keyed by loop node id."""
        return {s.node_id: s.iteration for s in self.scopes.values() if s.kind == "loop"}

    def results_for(self, node_id: str) -> list[NodeResult]:
        return [r for r in self.node_results if r.node_id == node_id]

    def last_output(self, node_id: str) -> Any:
        """Output of the most recent completed attempt of ``node_id``."""
        for result in reversed(self.node_results):
            if result.node_id == node_id and result.status == NodeResultStatus.COMPLETED:
                return result.output
        return None

    def find_token(self, token_id: str) -> Token | None:
        for token in self.frontier:
            if token.id == token_id:
                return token
        return None

    def find_suspended(self, token_id: str) -> SuspendedNode | None:
        for entry in self.suspended:
            if entry.token.id == token_id:
                return entry
        return None


# ========== Executor signals ==========


@dataclass
class Activation:
    """A new token to create along ``edge`` when a node suspends."""

    edge: Edge
    input: Any
    branch: str


@dataclass
class Proceed:
    """Node finished; follow ``edges`` (None = the node's unguarded edges)."""

    output: Any
    edges: list[Edge] | None = None


@dataclass
class Suspend:
    """Node waits for external input or for the region it opened."""

    reason: Literal["approval", "parallel", "loop"]
    scope: Scope | None = None
    activations: list[Activation] = field(default_factory=list)
    approval: PendingApproval | None = None


@dataclass
class Retry:
    """Re-queue the same node after ``delay`` seconds."""

    delay: float
    error: str
    agent_override: str | None = None
    fallback_index: int | None = None


@dataclass
class Fail:
    """Node failed. Structural failures end the run without any fallback."""

    error: str
    structural: bool = False


Signal = Proceed | Suspend | Retry | Fail
