"""Work item state machine and approval gates.

Work items progress backlog → ready → in_progress → review → done, with
review → in_progress for rework. Each transition carries an approval flag
taken from the item's override or the engine's policy default.
"""

from agent_ops.workflow.engine import ROLE_WORK_STATUS, WorkflowEngine
from agent_ops.workflow.models import (
    DEFAULT_APPROVAL_POLICY,
    TRANSITIONS,
    ApprovalPolicy,
    SuccessCriterion,
    Transition,
    TransitionCheck,
    WorkflowState,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
    transition_name,
)

__all__ = [
    # Models
    "DEFAULT_APPROVAL_POLICY",
    "TRANSITIONS",
    "ApprovalPolicy",
    "SuccessCriterion",
    "Transition",
    "TransitionCheck",
    "WorkflowState",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemType",
    "transition_name",
    # Engine
    "ROLE_WORK_STATUS",
    "WorkflowEngine",
]
