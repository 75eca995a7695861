"""Workflow engine with approval gates.

This module implements the WorkflowEngine that decides whether a work-item
status change is legal and whether it needs human sign-off first.

- Only the five named transitions are legal
- Entering "ready" is refused while the item has unresolved blockers
- The effective approval flag is the item's override if present, else the
  engine's injected ApprovalPolicy default
- Writes are compare-and-swap on the item's version; a concurrent writer
  forces a re-read and re-validation
- Transitions never cascade to parent or child items

Every executed transition emits a work_item_update trace event; a gated
transition refused for lack of an approver emits approval_required.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from agent_ops.errors import (
    ApprovalRequiredError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
    VersionConflictError,
)
from agent_ops.events.models import TraceEvent, TraceEventType
from agent_ops.workers.models import AgentRole
from agent_ops.workflow.models import (
    ApprovalPolicy,
    Transition,
    TransitionCheck,
    WorkflowState,
    WorkItem,
    WorkItemStatus,
    transition_name,
)

if TYPE_CHECKING:
    from agent_ops.events.hub import EventHub
    from agent_ops.store.base import RecordStore


logger = logging.getLogger(__name__)


# Status a role picks work up from
ROLE_WORK_STATUS: Dict[AgentRole, WorkItemStatus] = {
    AgentRole.REFINER: WorkItemStatus.BACKLOG,
    AgentRole.IMPLEMENTER: WorkItemStatus.READY,
    AgentRole.TESTER: WorkItemStatus.IN_PROGRESS,
    AgentRole.REVIEWER: WorkItemStatus.REVIEW,
}


class WorkflowEngine:
    """Validates and executes work item transitions.

    Attributes:
        store: Persistence for work items.
        policy: Approval defaults held by this engine instance.
        hub: Optional Event Hub receiving trace events.

    Example:
        >>> engine = WorkflowEngine(store, ApprovalPolicy())
        >>> check = engine.can_transition(item, WorkItemStatus.DONE)
        >>> if check.allowed and not check.requires_approval:
        ...     item = await engine.execute_transition(item, WorkItemStatus.DONE)
    """

    def __init__(
        self,
        store: "RecordStore[WorkItem]",
        policy: Optional[ApprovalPolicy] = None,
        hub: Optional["EventHub"] = None,
        max_conflict_retries: int = 5,
    ):
        if max_conflict_retries < 1:
            raise InvalidArgumentError("max_conflict_retries must be at least 1")
        self.store = store
        self.policy = policy or ApprovalPolicy()
        self.hub = hub
        self.max_conflict_retries = max_conflict_retries

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_transition(self, item: WorkItem, target: WorkItemStatus) -> TransitionCheck:
        """Decide whether ``item`` may move to ``target``.

        Not allowed if the pair is not one of the named transitions, or if
        the target is "ready" while blocked_by is non-empty. The approval
        flag is reported for every legal pair, blocked or not.
        """
        target = WorkItemStatus(target)
        transition = transition_name(item.status, target)
        if transition is None:
            return TransitionCheck(
                allowed=False,
                reason=(
                    f"No transition from {item.status.value} to {target.value}"
                ),
            )

        requires_approval = self.policy.requires_approval(
            transition, item.requires_approval
        )

        if target == WorkItemStatus.READY and item.blocked_by:
            return TransitionCheck(
                allowed=False,
                requires_approval=requires_approval,
                reason=f"Blocked by {', '.join(item.blocked_by)}",
                transition=transition,
            )

        return TransitionCheck(
            allowed=True,
            requires_approval=requires_approval,
            reason=(
                "Requires approval" if requires_approval else "Transition allowed"
            ),
            transition=transition,
        )

    def get_valid_transitions(self, item: WorkItem) -> List[WorkItemStatus]:
        """Return the target statuses can_transition currently allows."""
        return [
            status
            for status in WorkItemStatus
            if self.can_transition(item, status).allowed
        ]

    def get_workflow_state(self, item: WorkItem) -> WorkflowState:
        return WorkflowState(
            current_status=item.status,
            valid_transitions=self.get_valid_transitions(item),
            is_blocked=item.is_blocked,
            blockers=list(item.blocked_by),
            assigned_agents=dict(item.assigned_agents),
        )

    async def get_work_item(self, item_id: str) -> WorkItem:
        """Fetch a work item.

        Raises:
            NotFoundError: If the item does not exist.
        """
        item = await self.store.find_by_id(item_id)
        if item is None:
            raise NotFoundError("work_item", item_id)
        return item

    async def find_work_for_role(self, role: AgentRole) -> List[WorkItem]:
        """List unblocked items waiting in the status the role works from.

        refiner → backlog, implementer → ready, tester → in_progress,
        reviewer → review.
        """
        status = ROLE_WORK_STATUS[AgentRole(role)]
        items = await self.store.find_all(status=status)
        return [item for item in items if not item.blocked_by]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_work_item(self, item: WorkItem) -> WorkItem:
        """Persist a new work item and emit a work_item_update event."""
        created = await self.store.create(item)
        logger.info(
            "Work item created",
            extra={
                "work_item_id": created.id,
                "status": created.status.value,
                "type": created.type.value,
            },
        )
        await self._safe_emit(
            TraceEvent(
                event_type=TraceEventType.WORK_ITEM_UPDATE,
                work_item_id=created.id,
                payload={"action": "created", "status": created.status.value},
            )
        )
        return created

    async def execute_transition(
        self,
        item: WorkItem,
        target: WorkItemStatus,
        approved_by: Optional[str] = None,
    ) -> WorkItem:
        """Move a work item to ``target``.

        The stored record is re-read and re-validated before writing, so a
        stale ``item`` argument cannot bypass the rules. Entering in_progress
        sets started_at if unset; entering done sets completed_at.

        Args:
            item: The work item (only its id is trusted).
            target: The target status.
            approved_by: Identity of the human approver, if any.

        Returns:
            The updated work item.

        Raises:
            NotFoundError: If the item does not exist.
            InvalidTransitionError: If the transition is illegal or blocked.
            ApprovalRequiredError: If the transition is gated and no
                approver was supplied.
            VersionConflictError: If concurrent writers kept winning.
        """
        target = WorkItemStatus(target)
        if approved_by is not None and not approved_by.strip():
            raise InvalidArgumentError("approved_by cannot be empty")

        for _ in range(self.max_conflict_retries):
            current = await self.get_work_item(item.id)
            check = self.can_transition(current, target)

            if not check.allowed:
                logger.warning(
                    "Invalid work item transition attempted",
                    extra={
                        "work_item_id": current.id,
                        "from_status": current.status.value,
                        "to_status": target.value,
                        "reason": check.reason,
                    },
                )
                raise InvalidTransitionError(current.status, target, check.reason)

            if check.requires_approval and not approved_by:
                logger.info(
                    "Transition requires approval",
                    extra={
                        "work_item_id": current.id,
                        "transition": check.transition.value,
                    },
                )
                await self._safe_emit(
                    TraceEvent(
                        event_type=TraceEventType.APPROVAL_REQUIRED,
                        work_item_id=current.id,
                        payload={
                            "transition": check.transition.value,
                            "from_status": current.status.value,
                            "to_status": target.value,
                        },
                    )
                )
                raise ApprovalRequiredError(current.id, check.transition.value)

            now = datetime.now(timezone.utc)
            changes: Dict[str, Any] = {"status": target, "updated_at": now}
            if target == WorkItemStatus.IN_PROGRESS and current.started_at is None:
                changes["started_at"] = now
            if target == WorkItemStatus.DONE:
                changes["completed_at"] = now

            try:
                updated = await self.store.update(
                    current.id, changes, expected_version=current.version
                )
            except VersionConflictError:
                logger.debug(
                    "Work item changed concurrently, re-validating",
                    extra={"work_item_id": current.id, "version": current.version},
                )
                continue

            logger.info(
                "Work item transitioned",
                extra={
                    "work_item_id": updated.id,
                    "from_status": current.status.value,
                    "to_status": updated.status.value,
                    "transition": check.transition.value,
                    "approved_by": approved_by,
                },
            )
            await self._safe_emit(
                TraceEvent(
                    event_type=TraceEventType.WORK_ITEM_UPDATE,
                    work_item_id=updated.id,
                    payload={
                        "transition": check.transition.value,
                        "from_status": current.status.value,
                        "to_status": updated.status.value,
                        "approved_by": approved_by,
                    },
                )
            )
            return updated

        raise VersionConflictError(item.id, item.version)

    async def set_approval_requirement(
        self,
        item_id: str,
        transition: Transition,
        required: Optional[bool],
    ) -> WorkItem:
        """Override the approval flag of one transition for one item.

        Passing None removes the override so the policy default applies.
        """
        transition = Transition(transition)
        for _ in range(self.max_conflict_retries):
            current = await self.get_work_item(item_id)
            overrides = dict(current.requires_approval)
            if required is None:
                overrides.pop(transition, None)
            else:
                overrides[transition] = required
            try:
                return await self.store.update(
                    item_id,
                    {
                        "requires_approval": overrides,
                        "updated_at": datetime.now(timezone.utc),
                    },
                    expected_version=current.version,
                )
            except VersionConflictError:
                continue
        raise VersionConflictError(item_id, current.version)

    async def assign_agent(
        self,
        item_id: str,
        role: AgentRole,
        worker_id: str,
    ) -> WorkItem:
        """Record which worker handles ``role`` on the item."""
        role = AgentRole(role)
        for _ in range(self.max_conflict_retries):
            current = await self.get_work_item(item_id)
            agents = dict(current.assigned_agents)
            agents[role] = worker_id
            try:
                return await self.store.update(
                    item_id,
                    {
                        "assigned_agents": agents,
                        "updated_at": datetime.now(timezone.utc),
                    },
                    expected_version=current.version,
                )
            except VersionConflictError:
                continue
        raise VersionConflictError(item_id, current.version)

    async def _safe_emit(self, event: TraceEvent) -> None:
        """Ingest a trace event, logging instead of raising on failure."""
        if self.hub is None:
            return
        try:
            await self.hub.ingest(event)
        except Exception:
            logger.exception(
                "Failed to emit trace event",
                extra={
                    "event_type": event.event_type.value,
                    "work_item_id": event.work_item_id,
                },
            )
