"""Work assignment: bind assignable work items to pooled workers.

assign_work asks the Workflow Engine whether the item may start
(ready → in_progress), then looks for an idle worker spawned from the
role's template, spawns one if the pool has room, and otherwise queues the
request. Queued requests are retried when the pool reports a freed slot
(complete_work or terminate), never by polling.

A request is queued only when the pool is saturated: if a freshly spawned
worker is taken by a concurrent caller before it can be bound, the search
starts over. Requests for the same work item are serialized, so a second
concurrent request sees the item already in progress.

Binding a worker and moving the work item are two independent writes. If
the second fails after the first succeeded, the result carries the error
and the worker keeps its assignment; nothing is rolled back.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Union

from agent_ops.assignment.models import (
    AssignmentResult,
    AssignmentStatus,
    QueuedAssignment,
)
from agent_ops.assignment.queue import AssignmentQueue
from agent_ops.errors import (
    AgentOpsError,
    ApprovalRequiredError,
    CapacityExceededError,
    InvalidStateError,
    NotAssignableError,
    NotFoundError,
)
from agent_ops.workers.models import AgentRole, Worker
from agent_ops.workflow.models import WorkItem, WorkItemStatus

if TYPE_CHECKING:
    from agent_ops.events.metrics import AgentOpsMetrics
    from agent_ops.templates.registry import RoleTemplateMap
    from agent_ops.workers.pool import WorkerPool
    from agent_ops.workflow.engine import WorkflowEngine


logger = logging.getLogger(__name__)


class WorkAssignmentService:
    """Connects assignable work items to workers, queuing when saturated.

    Attributes:
        pool: The worker pool.
        workflow: The workflow engine.
        role_templates: Role → template id map resolved at startup.
        metrics: Optional Prometheus metrics for assignment outcomes.
    """

    def __init__(
        self,
        pool: "WorkerPool",
        workflow: "WorkflowEngine",
        role_templates: "RoleTemplateMap",
        metrics: Optional["AgentOpsMetrics"] = None,
    ):
        self.pool = pool
        self.workflow = workflow
        self.role_templates = role_templates
        self.metrics = metrics
        self._queue = AssignmentQueue()
        self._drain_task: Optional[asyncio.Task] = None
        self._drain_requested = False
        self._item_locks: Dict[str, asyncio.Lock] = {}
        self._item_waiters: Dict[str, int] = {}
        self.pool.add_slot_listener(self._on_slot_freed)

    async def assign_work(
        self,
        item: WorkItem,
        role: Union[AgentRole, str],
        approved_by: Optional[str] = None,
    ) -> AssignmentResult:
        """Assign a worker to a work item, or queue the request.

        Args:
            item: The work item to start.
            role: Role the worker will play.
            approved_by: Approver, when ready → in_progress is gated.

        Returns:
            An assigned or queued result.

        Raises:
            NotFoundError: If the work item does not exist.
            NotAssignableError: If the item may not move to in_progress.
            ApprovalRequiredError: If starting the item is gated and no
                approver was given.
        """
        role = AgentRole(role)
        async with self._item_guard(item.id):
            current = await self._check_assignable(item.id, approved_by)

            result = await self._try_assign(current, role, approved_by)
            if result is not None:
                self._queue.remove(current.id)
                self._record(result)
                return result

            position = self._queue.put(
                QueuedAssignment(work_item_id=current.id, role=role, approved_by=approved_by)
            )
        logger.info(
            "Work assignment queued",
            extra={
                "work_item_id": current.id,
                "role": role.value,
                "queue_position": position,
                "queue_depth": len(self._queue),
            },
        )
        result = AssignmentResult(
            status=AssignmentStatus.QUEUED,
            work_item_id=current.id,
            role=role,
            queue_position=position,
        )
        self._record(result)
        return result

    def queue_snapshot(self) -> List[QueuedAssignment]:
        return self._queue.snapshot()

    def cancel(self, work_item_id: str) -> bool:
        """Drop a queued request. Returns False if it was not queued."""
        removed = self._queue.remove(work_item_id) is not None
        if removed and self.metrics is not None:
            self.metrics.set_queue_depth(len(self._queue))
        return removed

    async def drain(self) -> List[AssignmentResult]:
        """Retry queued requests in FIFO order.

        Entries that still cannot be placed keep their position. Entries
        whose work item is gone or no longer assignable are dropped.

        Returns:
            Results for the entries that were assigned.
        """
        assigned: List[AssignmentResult] = []
        for entry in self._queue.snapshot():
            if entry.work_item_id not in self._queue:
                continue
            if not self.pool.can_spawn_more() and not await self.pool.get_available_workers():
                break

            async with self._item_guard(entry.work_item_id):
                if entry.work_item_id not in self._queue:
                    continue
                try:
                    current = await self._check_assignable(entry.work_item_id, entry.approved_by)
                except (NotFoundError, NotAssignableError, ApprovalRequiredError) as e:
                    logger.warning(
                        "Dropping queued assignment",
                        extra={"work_item_id": entry.work_item_id, "reason": str(e)},
                    )
                    self._queue.remove(entry.work_item_id)
                    continue

                result = await self._try_assign(current, entry.role, entry.approved_by)
                if result is None:
                    queued = self._queue.get(entry.work_item_id)
                    if queued is not None:
                        queued.attempts += 1
                    continue

                self._queue.remove(entry.work_item_id)
                self._record(result)
            assigned.append(result)
            logger.info(
                "Queued work assignment placed",
                extra={
                    "work_item_id": result.work_item_id,
                    "worker_id": result.worker_id,
                    "role": result.role.value,
                },
            )

        if self.metrics is not None:
            self.metrics.set_queue_depth(len(self._queue))
        return assigned

    async def join(self) -> None:
        """Wait until no drain is in flight."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def close(self) -> None:
        self.pool.remove_slot_listener(self._on_slot_freed)
        await self.join()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_slot_freed(self, worker: Worker) -> None:
        if not self._queue:
            return
        self._drain_requested = True
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop())

    async def _drain_loop(self) -> None:
        while self._drain_requested:
            self._drain_requested = False
            try:
                await self.drain()
            except Exception:
                logger.exception(
                    "Queue drain failed",
                    extra={"queue_depth": len(self._queue)},
                )

    @asynccontextmanager
    async def _item_guard(self, work_item_id: str) -> AsyncIterator[None]:
        """Serialize assignment attempts for one work item."""
        lock = self._item_locks.get(work_item_id)
        if lock is None:
            lock = self._item_locks[work_item_id] = asyncio.Lock()
        self._item_waiters[work_item_id] = self._item_waiters.get(work_item_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._item_waiters[work_item_id] -= 1
            if not self._item_waiters[work_item_id]:
                del self._item_waiters[work_item_id]
                del self._item_locks[work_item_id]

    async def _check_assignable(
        self, work_item_id: str, approved_by: Optional[str]
    ) -> WorkItem:
        current = await self.workflow.get_work_item(work_item_id)
        check = self.workflow.can_transition(current, WorkItemStatus.IN_PROGRESS)
        if not check.allowed:
            raise NotAssignableError(current.id, check.reason)
        if check.requires_approval and not approved_by:
            raise ApprovalRequiredError(current.id, check.transition.value)
        return current

    async def _try_assign(
        self,
        item: WorkItem,
        role: AgentRole,
        approved_by: Optional[str],
    ) -> Optional[AssignmentResult]:
        """Bind a worker if one is available; None means queue it."""
        template_id = self.role_templates.template_for(role)
        worker = await self._bind_worker(item.id, role, template_id)
        if worker is None:
            return None

        error: Optional[str] = None
        try:
            await self.workflow.assign_agent(item.id, role, worker.id)
            await self.workflow.execute_transition(
                item, WorkItemStatus.IN_PROGRESS, approved_by=approved_by
            )
        except AgentOpsError as e:
            error = str(e)
            logger.warning(
                "Partial assignment: worker bound but work item not updated",
                extra={
                    "work_item_id": item.id,
                    "worker_id": worker.id,
                    "role": role.value,
                    "error": error,
                },
            )

        logger.info(
            "Work assigned",
            extra={"work_item_id": item.id, "worker_id": worker.id, "role": role.value},
        )
        return AssignmentResult(
            status=AssignmentStatus.ASSIGNED,
            work_item_id=item.id,
            role=role,
            worker_id=worker.id,
            error=error,
        )

    async def _bind_worker(
        self, work_item_id: str, role: AgentRole, template_id: str
    ) -> Optional[Worker]:
        """Bind an idle or freshly spawned worker; None only when saturated.

        Every pass either binds a worker or loses one to a concurrent
        caller that bound it, so the loop ends once the pool is full.
        """
        while True:
            for candidate in await self.pool.get_available_workers():
                if candidate.template_id != template_id:
                    continue
                try:
                    return await self.pool.assign_work(candidate.id, work_item_id, role)
                except (InvalidStateError, NotFoundError):
                    # Another caller took this worker first
                    continue

            if not self.pool.can_spawn_more():
                return None
            try:
                spawned = await self.pool.spawn(template_id, f"session-{uuid.uuid4()}")
            except CapacityExceededError:
                continue
            try:
                return await self.pool.assign_work(spawned.id, work_item_id, role)
            except (InvalidStateError, NotFoundError):
                logger.info(
                    "Spawned worker taken by a concurrent assignment, retrying",
                    extra={"worker_id": spawned.id, "work_item_id": work_item_id},
                )

    def _record(self, result: AssignmentResult) -> None:
        if self.metrics is None:
            return
        label = "partial" if result.is_partial else result.status.value
        self.metrics.record_assignment(label)
        self.metrics.set_queue_depth(len(self._queue))
