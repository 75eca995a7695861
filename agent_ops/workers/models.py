"""Worker pool data models.

This module defines the data models for pooled agent workers:
- WorkerStatus: Enum of worker lifecycle states
- AgentRole: Enum of roles a worker can play on a work item
- WorkerMetrics: Resource usage counters for a worker
- Worker: Complete state of one pooled worker
- MetricsDelta: Metric update request (additive counters, absolute context)
- PoolSummary: Worker list plus derived aggregates

Worker status state machine:
    idle ⇄ working (assign_work / complete_work)
    working → paused → working | idle (pause / resume)
    working → error (report_error)
    any non-terminal → terminated (terminate, one-way)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


DEFAULT_CONTEXT_WINDOW_LIMIT = 200000


class WorkerStatus(str, Enum):
    """Lifecycle states of a pooled worker.

    Attributes:
        IDLE: Spawned and waiting for work; counts against the ceiling.
        WORKING: Executing a work item; counts against the ceiling.
        PAUSED: Execution suspended by an operator.
        ERROR: Execution failed; keeps its work-item reference for inspection.
        TERMINATED: Destroyed; terminal, never left.
    """

    IDLE = "idle"
    WORKING = "working"
    PAUSED = "paused"
    ERROR = "error"
    TERMINATED = "terminated"


# Statuses that occupy a slot under the pool ceiling
ACTIVE_STATUSES = frozenset({WorkerStatus.IDLE, WorkerStatus.WORKING})


class AgentRole(str, Enum):
    """Roles a worker can play against a work item."""

    REFINER = "refiner"
    IMPLEMENTER = "implementer"
    TESTER = "tester"
    REVIEWER = "reviewer"


class WorkerMetrics(BaseModel):
    """Resource usage counters for a worker.

    tokens_used, cost_usd, tool_calls and errors only ever grow.
    context_window_used is the last reported absolute value.
    """

    tokens_used: int = Field(default=0, ge=0, description="Total tokens consumed")
    cost_usd: float = Field(default=0.0, ge=0, description="Total monetary cost")
    tool_calls: int = Field(default=0, ge=0, description="Total tool invocations")
    context_window_used: int = Field(
        default=0,
        ge=0,
        description="Current context window usage (absolute, last write wins)",
    )
    context_window_limit: int = Field(
        default=DEFAULT_CONTEXT_WINDOW_LIMIT,
        ge=1,
        description="Context window size available to the worker",
    )
    errors: int = Field(default=0, ge=0, description="Number of reported errors")


class Worker(BaseModel):
    """Complete state of one pooled agent worker.

    Workers are created exclusively by WorkerPool.spawn and reach their
    terminal status exclusively through WorkerPool.terminate. The version
    field backs the compare-and-swap writes the pool uses for every
    status mutation.

    Attributes:
        id: Unique worker identifier.
        template_id: Template the worker was spawned from.
        status: Current lifecycle status.
        current_work_item_id: Work item being handled, if any.
        current_role: Role played on the current work item, if any.
        session_id: Opaque execution-session identifier.
        spawned_at: When the worker was created (UTC).
        last_activity_at: When the worker last changed (UTC).
        metrics: Resource usage counters.
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1, description="Unique worker identifier")

    template_id: str = Field(
        ...,
        min_length=1,
        description="Template the worker was spawned from",
    )

    status: WorkerStatus = Field(
        default=WorkerStatus.IDLE,
        description="Current lifecycle status",
    )

    current_work_item_id: Optional[str] = Field(
        default=None,
        description="Work item currently assigned to the worker",
    )

    current_role: Optional[AgentRole] = Field(
        default=None,
        description="Role played on the current work item",
    )

    session_id: str = Field(
        ...,
        min_length=1,
        description="Opaque execution-session identifier",
    )

    spawned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the worker was spawned (UTC)",
    )

    last_activity_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the worker last changed state (UTC)",
    )

    metrics: WorkerMetrics = Field(
        default_factory=WorkerMetrics,
        description="Resource usage counters",
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic locking version for concurrent update protection",
    )

    @property
    def is_active(self) -> bool:
        """Whether the worker occupies a slot under the pool ceiling."""
        return self.status in ACTIVE_STATUSES


class MetricsDelta(BaseModel):
    """Metric update for a worker.

    tokens_used, cost_usd and tool_calls are added to the current totals.
    context_window_used, when given, replaces the current value.
    """

    tokens_used: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)
    tool_calls: int = Field(default=0, ge=0)
    context_window_used: Optional[int] = Field(default=None, ge=0)

    def increments(self) -> dict:
        """Return the non-zero additive deltas keyed by metric name."""
        deltas = {
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "tool_calls": self.tool_calls,
        }
        return {name: value for name, value in deltas.items() if value}


class PoolSummary(BaseModel):
    """Snapshot of the pool with derived aggregates.

    Attributes:
        workers: Every known worker, terminated ones included.
        total: Number of workers.
        active: Workers that are idle or working.
        idle: Workers that are idle.
        max_workers: The ceiling in effect.
        total_cost_usd: Summed cost across workers.
        total_tokens_used: Summed tokens across workers.
        total_tool_calls: Summed tool calls across workers.
    """

    workers: List[Worker] = Field(default_factory=list)
    total: int = 0
    active: int = 0
    idle: int = 0
    max_workers: int = 0
    total_cost_usd: float = 0.0
    total_tokens_used: int = 0
    total_tool_calls: int = 0
