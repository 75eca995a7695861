"""Worker pool: lifecycle and concurrency ceiling for agent workers.

The pool is the only component that creates workers or changes their
status. It enforces:

- A ceiling on simultaneously active (idle + working) workers. The pool
  tracks active worker ids in memory and reserves a slot synchronously
  before the durable create, so concurrent spawns can never overshoot.
- Per-worker atomicity. Status changes are compare-and-swap writes on the
  worker's version, re-read and re-validated on conflict; metric deltas go
  through the store's atomic increment. No lock is held across store I/O.
- Terminated is terminal. No operation moves a worker out of it.

Slot listeners registered with add_slot_listener are called after
complete_work and terminate commit; Work Assignment uses this to drain its
queue without polling.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Union,
)

from agent_ops.errors import (
    CapacityExceededError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    VersionConflictError,
)
from agent_ops.events.models import TraceEvent, TraceEventType
from agent_ops.workers.models import (
    DEFAULT_CONTEXT_WINDOW_LIMIT,
    AgentRole,
    MetricsDelta,
    PoolSummary,
    Worker,
    WorkerMetrics,
    WorkerStatus,
)

if TYPE_CHECKING:
    from agent_ops.events.hub import EventHub
    from agent_ops.store.base import RecordStore


logger = logging.getLogger(__name__)


SlotListener = Callable[[Worker], None]

# Returns the changes to write, or None when the operation is a no-op
Decision = Callable[[Worker], Optional[Dict[str, Any]]]


@dataclass
class PoolConfig:
    """Configuration for one WorkerPool instance.

    Attributes:
        max_workers: Ceiling on active (idle + working) workers.
        context_window_limit: Default context window for spawned workers.
        max_conflict_retries: Re-read attempts after a version conflict.
    """

    max_workers: int = 10
    context_window_limit: int = DEFAULT_CONTEXT_WINDOW_LIMIT
    max_conflict_retries: int = 5

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise InvalidArgumentError("max_workers must be positive")
        if self.context_window_limit <= 0:
            raise InvalidArgumentError("context_window_limit must be positive")
        if self.max_conflict_retries < 1:
            raise InvalidArgumentError("max_conflict_retries must be at least 1")


class WorkerPool:
    """Owns worker lifecycle and the active-worker ceiling.

    Attributes:
        store: Persistence for worker records.
        config: Pool configuration (a private copy per pool).
        hub: Optional Event Hub receiving trace events.

    Example:
        >>> pool = WorkerPool(InMemoryRecordStore(Worker, "worker"), PoolConfig(max_workers=2))
        >>> worker = await pool.spawn("implementer-template", "session-1")
        >>> worker = await pool.assign_work(worker.id, "wi-1", AgentRole.IMPLEMENTER)
        >>> worker = await pool.complete_work(worker.id)
    """

    def __init__(
        self,
        store: "RecordStore[Worker]",
        config: Optional[PoolConfig] = None,
        hub: Optional["EventHub"] = None,
    ):
        self.store = store
        config = config or PoolConfig()
        self.config = PoolConfig(
            max_workers=config.max_workers,
            context_window_limit=config.context_window_limit,
            max_conflict_retries=config.max_conflict_retries,
        )
        self.hub = hub
        self._active: Set[str] = set()
        self._versions: Dict[str, int] = {}
        self._reserved = 0
        self._slot_listeners: List[SlotListener] = []

    async def load(self) -> int:
        """Hydrate active-slot accounting from the store.

        Call once at startup when the store already holds workers.

        Returns:
            Number of active workers found.
        """
        for worker in await self.store.find_all():
            self._track(worker)
        logger.info(
            "Worker pool loaded",
            extra={"active_workers": len(self._active), "max_workers": self.max_workers},
        )
        return len(self._active)

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    @property
    def max_workers(self) -> int:
        return self.config.max_workers

    def get_max_workers(self) -> int:
        return self.config.max_workers

    @property
    def active_count(self) -> int:
        """Active workers plus spawns in flight."""
        return len(self._active) + self._reserved

    def can_spawn_more(self) -> bool:
        return self.active_count < self.config.max_workers

    def set_max_workers(self, max_workers: int) -> None:
        """Change the ceiling for subsequent spawns.

        Existing workers above a lowered ceiling are not evicted.

        Raises:
            InvalidArgumentError: If max_workers is not positive.
        """
        if max_workers <= 0:
            raise InvalidArgumentError("max_workers must be positive")
        logger.info(
            "Worker ceiling changed",
            extra={"old_max_workers": self.config.max_workers, "max_workers": max_workers},
        )
        self.config.max_workers = max_workers

    def add_slot_listener(self, listener: SlotListener) -> None:
        """Register a callback run after complete_work or terminate commits."""
        self._slot_listeners.append(listener)

    def remove_slot_listener(self, listener: SlotListener) -> bool:
        try:
            self._slot_listeners.remove(listener)
            return True
        except ValueError:
            return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(
        self,
        template_id: str,
        session_id: str,
        context_window_limit: Optional[int] = None,
    ) -> Worker:
        """Create an idle worker from a template.

        Args:
            template_id: Template to spawn from.
            session_id: Opaque execution-session identifier.
            context_window_limit: Overrides the pool default if given.

        Returns:
            The new worker, status idle with zeroed metrics.

        Raises:
            InvalidArgumentError: If either id is empty or the limit is not
                positive.
            CapacityExceededError: If the pool is at its ceiling.
        """
        if not template_id or not template_id.strip() or not session_id or not session_id.strip():
            raise InvalidArgumentError("Template ID and session ID are required")

        limit = (
            self.config.context_window_limit
            if context_window_limit is None
            else context_window_limit
        )
        if limit <= 0:
            raise InvalidArgumentError("context_window_limit must be positive")

        if not self.can_spawn_more():
            logger.warning(
                "Spawn rejected: worker ceiling reached",
                extra={
                    "template_id": template_id,
                    "active_workers": self.active_count,
                    "max_workers": self.config.max_workers,
                },
            )
            raise CapacityExceededError(self.active_count, self.config.max_workers)

        self._reserved += 1
        try:
            worker = Worker(
                id=str(uuid.uuid4()),
                template_id=template_id,
                session_id=session_id,
                status=WorkerStatus.IDLE,
                metrics=WorkerMetrics(context_window_limit=limit),
            )
            created = await self.store.create(worker)
            self._track(created)
        finally:
            self._reserved -= 1

        logger.info(
            "Worker spawned",
            extra={
                "worker_id": created.id,
                "template_id": template_id,
                "session_id": session_id,
                "active_workers": self.active_count,
            },
        )
        await self._emit_state(created, None, "spawn")
        return created

    async def terminate(self, worker_id: str) -> Worker:
        """Clear the assignment and mark the worker terminated.

        Terminating an already terminated worker is a no-op.

        Raises:
            NotFoundError: If the worker does not exist.
        """

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status == WorkerStatus.TERMINATED:
                return None
            return {
                "status": WorkerStatus.TERMINATED,
                "current_work_item_id": None,
                "current_role": None,
            }

        return await self._change(worker_id, "terminate", decide, frees_slot=True)

    async def pause(self, worker_id: str) -> Worker:
        """Suspend a working worker.

        Raises:
            NotFoundError: If the worker does not exist.
            InvalidStateError: Unless the worker is working.
        """

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status != WorkerStatus.WORKING:
                raise InvalidStateError(worker.id, worker.status, "pause")
            return {"status": WorkerStatus.PAUSED}

        return await self._change(worker_id, "pause", decide)

    async def resume(self, worker_id: str) -> Worker:
        """Resume a paused worker.

        The worker returns to working if it still holds a work item, and to
        idle otherwise.

        Raises:
            NotFoundError: If the worker does not exist.
            InvalidStateError: Unless the worker is paused.
        """

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status != WorkerStatus.PAUSED:
                raise InvalidStateError(worker.id, worker.status, "resume")
            if worker.current_work_item_id:
                return {"status": WorkerStatus.WORKING}
            return {"status": WorkerStatus.IDLE}

        return await self._change(worker_id, "resume", decide)

    async def assign_work(
        self,
        worker_id: str,
        work_item_id: str,
        role: Union[AgentRole, str],
    ) -> Worker:
        """Bind an idle worker to a work item.

        Raises:
            InvalidArgumentError: If work_item_id is empty or role unknown.
            NotFoundError: If the worker does not exist.
            InvalidStateError: Unless the worker is idle.
        """
        if not work_item_id or not work_item_id.strip():
            raise InvalidArgumentError("work_item_id is required")
        try:
            role = AgentRole(role)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown role: {role}") from e

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status != WorkerStatus.IDLE:
                raise InvalidStateError(worker.id, worker.status, "assign work to")
            return {
                "status": WorkerStatus.WORKING,
                "current_work_item_id": work_item_id,
                "current_role": role,
            }

        return await self._change(worker_id, "assign_work", decide)

    async def complete_work(self, worker_id: str) -> Worker:
        """Clear the assignment and return the worker to idle.

        Raises:
            NotFoundError: If the worker does not exist.
            InvalidStateError: If the worker is terminated.
        """

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status == WorkerStatus.TERMINATED:
                raise InvalidStateError(worker.id, worker.status, "complete work on")
            return {
                "status": WorkerStatus.IDLE,
                "current_work_item_id": None,
                "current_role": None,
            }

        return await self._change(worker_id, "complete_work", decide, frees_slot=True)

    async def report_error(self, worker_id: str, message: str) -> Worker:
        """Count an error and move the worker to the error status.

        The work-item reference is kept so that operators can inspect or
        retry the item.

        Raises:
            NotFoundError: If the worker does not exist.
            InvalidStateError: If the worker is terminated.
        """

        def decide(worker: Worker) -> Optional[Dict[str, Any]]:
            if worker.status == WorkerStatus.TERMINATED:
                raise InvalidStateError(worker.id, worker.status, "report error on")
            return {
                "status": WorkerStatus.ERROR,
                "metrics.errors": worker.metrics.errors + 1,
            }

        worker = await self._change(worker_id, "report_error", decide, emit=False)
        logger.error(
            "Worker reported error",
            extra={
                "worker_id": worker.id,
                "work_item_id": worker.current_work_item_id,
                "error_count": worker.metrics.errors,
                "error": message,
            },
        )
        await self._safe_emit(
            TraceEvent(
                event_type=TraceEventType.ERROR,
                worker_id=worker.id,
                work_item_id=worker.current_work_item_id,
                payload={
                    "message": message,
                    "error_type": "worker_error",
                    "status": worker.status.value,
                    "error_count": worker.metrics.errors,
                },
            )
        )
        return worker

    async def update_metrics(
        self,
        worker_id: str,
        delta: Union[MetricsDelta, Mapping[str, Any]],
    ) -> Worker:
        """Apply a metric update atomically.

        tokens_used, cost_usd and tool_calls are added to the totals;
        context_window_used replaces the current value.

        Raises:
            NotFoundError: If the worker does not exist.
        """
        if not isinstance(delta, MetricsDelta):
            delta = MetricsDelta.model_validate(delta)

        changes: Dict[str, Any] = {"last_activity_at": datetime.now(timezone.utc)}
        if delta.context_window_used is not None:
            changes["metrics.context_window_used"] = delta.context_window_used

        increments = {f"metrics.{name}": value for name, value in delta.increments().items()}
        worker = await self.store.increment(worker_id, increments, changes)
        self._track(worker)

        await self._safe_emit(
            TraceEvent(
                event_type=TraceEventType.METRIC_UPDATE,
                worker_id=worker.id,
                work_item_id=worker.current_work_item_id,
                payload={
                    "delta": delta.model_dump(exclude_none=True),
                    "metrics": worker.metrics.model_dump(),
                },
            )
        )
        return worker

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_worker(self, worker_id: str) -> Worker:
        worker = await self.store.find_by_id(worker_id)
        if worker is None:
            raise NotFoundError("worker", worker_id)
        return worker

    async def get_available_workers(self) -> List[Worker]:
        """Return idle workers in spawn order."""
        return await self.store.find_all(status=WorkerStatus.IDLE)

    async def get_workers_by_template(self, template_id: str) -> List[Worker]:
        return await self.store.find_all(template_id=template_id)

    async def get_pool(self) -> PoolSummary:
        """Return every worker plus derived aggregates."""
        workers = await self.store.find_all()
        return PoolSummary(
            workers=workers,
            total=len(workers),
            active=sum(1 for w in workers if w.is_active),
            idle=sum(1 for w in workers if w.status == WorkerStatus.IDLE),
            max_workers=self.config.max_workers,
            total_cost_usd=sum(w.metrics.cost_usd for w in workers),
            total_tokens_used=sum(w.metrics.tokens_used for w in workers),
            total_tool_calls=sum(w.metrics.tool_calls for w in workers),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _change(
        self,
        worker_id: str,
        operation: str,
        decide: Decision,
        frees_slot: bool = False,
        emit: bool = True,
    ) -> Worker:
        """Compare-and-swap a status change, re-validating on conflict."""
        current: Optional[Worker] = None
        for _ in range(self.config.max_conflict_retries):
            current = await self.store.find_by_id(worker_id)
            if current is None:
                raise NotFoundError("worker", worker_id)

            changes = decide(current)
            if changes is None:
                return current
            changes["last_activity_at"] = datetime.now(timezone.utc)

            try:
                updated = await self.store.update(
                    worker_id, changes, expected_version=current.version
                )
            except VersionConflictError:
                logger.debug(
                    "Worker changed concurrently, re-validating",
                    extra={"worker_id": worker_id, "operation": operation},
                )
                continue

            self._track(updated)
            logger.info(
                "Worker status changed",
                extra={
                    "worker_id": worker_id,
                    "operation": operation,
                    "from_status": current.status.value,
                    "to_status": updated.status.value,
                },
            )
            if emit:
                await self._emit_state(updated, current.status, operation)
            if frees_slot:
                self._notify_slot_listeners(updated)
            return updated

        raise VersionConflictError(worker_id, current.version if current else 0)

    def _track(self, worker: Worker) -> None:
        """Record a committed worker state in the active-slot accounting.

        Out-of-order continuations are ignored by comparing versions.
        """
        if self._versions.get(worker.id, 0) > worker.version:
            return
        self._versions[worker.id] = worker.version
        if worker.is_active:
            self._active.add(worker.id)
        else:
            self._active.discard(worker.id)

    def _notify_slot_listeners(self, worker: Worker) -> None:
        for listener in list(self._slot_listeners):
            try:
                listener(worker)
            except Exception:
                logger.exception(
                    "Slot listener failed",
                    extra={"worker_id": worker.id},
                )

    async def _emit_state(
        self,
        worker: Worker,
        previous: Optional[WorkerStatus],
        operation: str,
    ) -> None:
        await self._safe_emit(
            TraceEvent(
                event_type=TraceEventType.AGENT_STATE,
                worker_id=worker.id,
                work_item_id=worker.current_work_item_id,
                payload={
                    "operation": operation,
                    "status": worker.status.value,
                    "previous_status": previous.value if previous else None,
                    "template_id": worker.template_id,
                    "current_role": worker.current_role.value if worker.current_role else None,
                },
            )
        )

    async def _safe_emit(self, event: TraceEvent) -> None:
        """Ingest a trace event, logging instead of raising on failure."""
        if self.hub is None:
            return
        try:
            await self.hub.ingest(event)
        except Exception:
            logger.exception(
                "Failed to emit trace event",
                extra={"event_type": event.event_type.value, "worker_id": event.worker_id},
            )
