"""Work assignment result and queue entry models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from agent_ops.workers.models import AgentRole


class AssignmentStatus(str, Enum):
    """Outcome of an assignment request.

    Attributes:
        ASSIGNED: A worker was bound to the work item.
        QUEUED: The pool was saturated; the request waits in FIFO order.
    """

    ASSIGNED = "assigned"
    QUEUED = "queued"


class AssignmentResult(BaseModel):
    """Result of WorkAssignmentService.assign_work.

    Attributes:
        status: assigned or queued.
        work_item_id: The work item requested.
        role: Role the worker plays on the item.
        worker_id: Bound worker, when assigned.
        queue_position: 1-based position, when queued.
        error: Set when the worker was bound but the work item write that
            follows failed. The worker is not rolled back; the caller
            reconciles.
    """

    status: AssignmentStatus
    work_item_id: str
    role: AgentRole
    worker_id: Optional[str] = None
    queue_position: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return self.status == AssignmentStatus.ASSIGNED and self.error is not None


class QueuedAssignment(BaseModel):
    """A work item waiting for a worker."""

    work_item_id: str = Field(..., min_length=1)
    role: AgentRole
    approved_by: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = Field(default=0, ge=0)
