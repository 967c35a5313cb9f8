"""
Run models: run records, per-node execution state, and run results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from app.models.graph import WorkflowEdge, WorkflowNode

if TYPE_CHECKING:
    from app.services.node_executors import ExecutorServices


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunScope(str, Enum):
    SINGLE = "single"
    PARTIAL = "partial"
    FULL = "full"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)
TERMINAL_NODE_STATUSES = frozenset(
    {NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeExecutionState(BaseModel):
    node_id: str
    node_type: str | None = None
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class RunRecord(BaseModel):
    run_id: str
    workflow_id: str | None = None
    status: RunStatus = RunStatus.PENDING
    scope: RunScope = RunScope.FULL
    selected_nodes: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    node_states: list[NodeExecutionState] = Field(default_factory=list)


class ExecutionPlan(BaseModel):
    """A validated, scope-restricted graph with its execution waves."""

    scope: RunScope
    selected_nodes: list[str] = Field(default_factory=list)
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    waves: list[list[str]]


class RunResult(BaseModel):
    run_id: str
    status: RunStatus
    node_states: list[NodeExecutionState]
    outputs: dict[str, Any]
    total_execution_time_ms: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def state_for(self, node_id: str) -> NodeExecutionState | None:
        return next((s for s in self.node_states if s.node_id == node_id), None)


class UpstreamOutput(BaseModel):
    """One incoming edge's value as seen by the downstream executor."""

    node_id: str
    output: Any = None
    source_handle: str | None = None
    target_handle: str | None = None


@dataclass
class ExecutionContext:
    """Per-run scratch state. Owned by a single run and dropped at its end."""

    run_id: str
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    services: ExecutorServices
    outputs: dict[str, Any] = field(default_factory=dict)
