"""Work item workflow models.

This module defines the data models for the work-item state machine:
- WorkItemStatus: Enum of the five pipeline stages
- WorkItemType: Enum of work item categories
- Transition: Enum of the five named, directed transitions
- TRANSITIONS: Map from (current, target) status pairs to transition names
- DEFAULT_APPROVAL_POLICY: Conservative per-transition approval defaults
- ApprovalPolicy: Injected approval configuration held by an engine
- SuccessCriterion, WorkItem: The work item record
- TransitionCheck: Result of asking whether a transition may proceed

Status flow:
    backlog → ready → in_progress → review → done
                          ↑            │
                          └── rework ──┘
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from agent_ops.workers.models import AgentRole


class WorkItemStatus(str, Enum):
    """Pipeline stages a work item moves through.

    Attributes:
        BACKLOG: Captured, not yet refined.
        READY: Refined and unblocked; eligible for assignment.
        IN_PROGRESS: Being worked on by an agent.
        REVIEW: Waiting for review of the result.
        DONE: Accepted.
    """

    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class WorkItemType(str, Enum):
    """Categories of work item."""

    FEATURE = "feature"
    BUG = "bug"
    RESEARCH = "research"
    TASK = "task"


class Transition(str, Enum):
    """Named, directed work item transitions.

    No other status pairs are legal.
    """

    BACKLOG_TO_READY = "backlog_to_ready"
    READY_TO_IN_PROGRESS = "ready_to_in_progress"
    IN_PROGRESS_TO_REVIEW = "in_progress_to_review"
    REVIEW_TO_DONE = "review_to_done"
    REVIEW_TO_IN_PROGRESS = "review_to_in_progress"


TRANSITIONS: Dict[Tuple[WorkItemStatus, WorkItemStatus], Transition] = {
    (WorkItemStatus.BACKLOG, WorkItemStatus.READY): Transition.BACKLOG_TO_READY,
    (WorkItemStatus.READY, WorkItemStatus.IN_PROGRESS): Transition.READY_TO_IN_PROGRESS,
    (WorkItemStatus.IN_PROGRESS, WorkItemStatus.REVIEW): Transition.IN_PROGRESS_TO_REVIEW,
    (WorkItemStatus.REVIEW, WorkItemStatus.DONE): Transition.REVIEW_TO_DONE,
    (WorkItemStatus.REVIEW, WorkItemStatus.IN_PROGRESS): Transition.REVIEW_TO_IN_PROGRESS,
}


# Entering ready or leaving review for done/rework needs a human by default;
# moving work forward into and out of execution does not.
DEFAULT_APPROVAL_POLICY: Dict[Transition, bool] = {
    Transition.BACKLOG_TO_READY: True,
    Transition.READY_TO_IN_PROGRESS: False,
    Transition.IN_PROGRESS_TO_REVIEW: False,
    Transition.REVIEW_TO_DONE: True,
    Transition.REVIEW_TO_IN_PROGRESS: True,
}


def transition_name(
    from_status: WorkItemStatus, to_status: WorkItemStatus
) -> Optional[Transition]:
    """Return the named transition for a status pair, or None if illegal."""
    return TRANSITIONS.get((WorkItemStatus(from_status), WorkItemStatus(to_status)))


@dataclass
class ApprovalPolicy:
    """Process-wide approval defaults held by one WorkflowEngine.

    Attributes:
        defaults: Transition → requires-approval flag. Missing transitions
            fall back to DEFAULT_APPROVAL_POLICY.
    """

    defaults: Dict[Transition, bool] = field(
        default_factory=lambda: dict(DEFAULT_APPROVAL_POLICY)
    )

    def requires_approval(
        self,
        transition: Transition,
        overrides: Optional[Mapping[Transition, bool]] = None,
    ) -> bool:
        """Effective approval flag: item override first, then the default."""
        if overrides and transition in overrides:
            return overrides[transition]
        if transition in self.defaults:
            return self.defaults[transition]
        return DEFAULT_APPROVAL_POLICY[transition]


class SuccessCriterion(BaseModel):
    """One verifiable acceptance condition of a work item."""

    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    completed: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None


class WorkItem(BaseModel):
    """A unit of trackable work moving through the five-stage pipeline.

    Work items are created by human or API actors; the Workflow Engine only
    ever changes them through validated transitions. Parent/child links are
    tracked but never cascade: completing children does not move a parent.

    Attributes:
        id: Unique work item identifier.
        title: Short summary.
        type: Work item category.
        status: Current pipeline stage.
        description: Longer description.
        success_criteria: Ordered acceptance conditions.
        assigned_agents: Role → worker id of the agent handling that role.
        requires_approval: Per-item overrides of the approval policy.
        created_by: Actor that created the item.
        parent_id: Parent work item, if any.
        child_ids: Child work items.
        blocked_by: Work items that must be resolved first; a non-empty list
            keeps the item out of "ready".
        linked_files: Repository paths relevant to the item.
        created_at / updated_at / started_at / completed_at: Timestamps (UTC).
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1, description="Unique work item identifier")

    title: str = Field(..., min_length=1, description="Short summary")

    type: WorkItemType = Field(default=WorkItemType.TASK, description="Category")

    status: WorkItemStatus = Field(
        default=WorkItemStatus.BACKLOG,
        description="Current pipeline stage",
    )

    description: str = Field(default="", description="Longer description")

    success_criteria: List[SuccessCriterion] = Field(default_factory=list)

    assigned_agents: Dict[AgentRole, str] = Field(
        default_factory=dict,
        description="Role → assigned worker id",
    )

    requires_approval: Dict[Transition, bool] = Field(
        default_factory=dict,
        description="Per-item overrides of the approval policy",
    )

    created_by: Optional[str] = None

    parent_id: Optional[str] = None

    child_ids: List[str] = Field(default_factory=list)

    blocked_by: List[str] = Field(
        default_factory=list,
        description="Work items blocking entry into ready",
    )

    linked_files: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    started_at: Optional[datetime] = None

    completed_at: Optional[datetime] = None

    version: int = Field(default=1, ge=1)

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocked_by)


class TransitionCheck(BaseModel):
    """Outcome of WorkflowEngine.can_transition.

    Attributes:
        allowed: Whether the transition is legal right now.
        requires_approval: Effective approval flag for the transition.
        reason: Human-readable explanation.
        transition: The named transition, if the pair is legal.
    """

    allowed: bool
    requires_approval: bool = False
    reason: str = ""
    transition: Optional[Transition] = None


class WorkflowState(BaseModel):
    """Snapshot of where a work item stands in the workflow."""

    current_status: WorkItemStatus
    valid_transitions: List[WorkItemStatus] = Field(default_factory=list)
    is_blocked: bool = False
    blockers: List[str] = Field(default_factory=list)
    assigned_agents: Dict[AgentRole, str] = Field(default_factory=dict)
