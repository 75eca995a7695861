"""Work assignment with an event-driven FIFO queue."""

from agent_ops.assignment.models import (
    AssignmentResult,
    AssignmentStatus,
    QueuedAssignment,
)
from agent_ops.assignment.queue import AssignmentQueue
from agent_ops.assignment.service import WorkAssignmentService

__all__ = [
    "AssignmentQueue",
    "AssignmentResult",
    "AssignmentStatus",
    "QueuedAssignment",
    "WorkAssignmentService",
]
