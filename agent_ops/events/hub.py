"""Event Hub: trace capture and real-time fan-out.

The hub receives trace events from worker execution, persists them through
a TraceStore, and pushes them to every live subscriber. Broadcast only
enqueues: each subscriber is fed by its own delivery task from a bounded
queue, so a slow or stalled receiver never delays ingestion (and with it
the pool and workflow operations that emit traces). When a subscriber's
queue is full, further events for it are dropped and logged.

Subscriptions may be scoped to one worker and/or one work item; scoped
subscribers only see matching events. Error and approval_required events
are additionally delivered on the alert channel of each subscriber.

Retention keeps at most ``retention_limit`` events; the oldest are trimmed
after each append. Timestamps stamped by the hub are strictly increasing.
A producer timestamp that collides with a retained one is moved forward
by a microsecond, so every retained event is strictly newer than every
trimmed one.
"""

import asyncio
import bisect
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from agent_ops.errors import InvalidArgumentError
from agent_ops.events.models import Alert, TraceEvent, TraceEventType
from agent_ops.events.subscribers import SubscriptionHandle, TraceSubscriber

if TYPE_CHECKING:
    from agent_ops.store.base import TraceStore


logger = logging.getLogger(__name__)


DEFAULT_RETENTION_LIMIT = 1000
DEFAULT_MAX_PENDING = 256

_TICK = timedelta(microseconds=1)


class TraceFilter(BaseModel):
    """Filters for querying persisted trace history."""

    worker_id: Optional[str] = None
    work_item_id: Optional[str] = None
    event_type: Optional[TraceEventType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ToolCallStats(BaseModel):
    """Aggregated tool usage across retained tool_call events."""

    total_calls: int = 0
    by_tool: Dict[str, int] = Field(default_factory=dict)
    workers_with_tool_calls: int = 0
    average_calls_per_worker: float = 0.0


class EventHub:
    """Persists trace events and broadcasts them to live subscribers.

    Attributes:
        retention_limit: Maximum number of retained trace events.
        max_pending: Undelivered events buffered per subscriber.

    Example:
        >>> hub = EventHub(InMemoryTraceStore(), retention_limit=1000)
        >>> handle = hub.subscribe(CallbackSubscriber(on_event=send), worker_id="worker-1")
        >>> await hub.record_tool_call("worker-1", "read_file", duration_ms=42)
        >>> hub.unsubscribe(handle)
    """

    def __init__(
        self,
        trace_store: "TraceStore",
        retention_limit: int = DEFAULT_RETENTION_LIMIT,
        max_pending: int = DEFAULT_MAX_PENDING,
    ):
        if retention_limit <= 0:
            raise InvalidArgumentError("trace_retention_limit must be positive")
        if max_pending <= 0:
            raise InvalidArgumentError("subscriber_queue_size must be positive")
        self._store = trace_store
        self._retention_limit = retention_limit
        self._max_pending = max_pending
        self._subscriptions: Dict[str, SubscriptionHandle] = {}
        self._last_timestamp: Optional[datetime] = None
        # Sorted timestamps of the events inside the retention window
        self._retained_timestamps: List[datetime] = []

    @property
    def retention_limit(self) -> int:
        return self._retention_limit

    @property
    def max_pending(self) -> int:
        return self._max_pending

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    def subscribe(
        self,
        subscriber: TraceSubscriber,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
    ) -> SubscriptionHandle:
        """Register a live receiver. It sees only events ingested from now on.

        Args:
            subscriber: The receiver.
            worker_id: Restrict delivery to events for this worker.
            work_item_id: Restrict delivery to events for this work item.
        """
        handle = SubscriptionHandle(subscriber, worker_id=worker_id, work_item_id=work_item_id)
        self._subscriptions[handle.id] = handle
        logger.info(
            "Subscriber registered",
            extra={
                "subscription_id": handle.id,
                "subscriber_type": type(subscriber).__name__,
                "channel": handle.channel,
                "subscriber_count": len(self._subscriptions),
            },
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Deregister a receiver. Events still queued for it are discarded.

        Returns:
            True if the handle was registered, False otherwise.
        """
        removed = self._subscriptions.pop(handle.id, None) is not None
        if handle.task is not None:
            handle.task.cancel()
        if removed:
            logger.info(
                "Subscriber removed",
                extra={
                    "subscription_id": handle.id,
                    "subscriber_count": len(self._subscriptions),
                    "dropped_events": handle.dropped,
                },
            )
        return removed

    async def flush(self) -> None:
        """Wait until every queued event has been handed to its subscriber."""
        queues = [
            handle.queue
            for handle in self._subscriptions.values()
            if handle.queue is not None and handle.task is not None and not handle.task.done()
        ]
        await asyncio.gather(*(queue.join() for queue in queues))

    async def close(self) -> None:
        """Stop delivery, then unsubscribe and close every subscriber."""
        handles = list(self._subscriptions.values())
        self._subscriptions.clear()
        tasks = [h.task for h in handles if h.task is not None and not h.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for handle in handles:
            try:
                await handle.subscriber.close()
            except Exception as e:
                logger.error(
                    "Failed to close subscriber %s: %s",
                    type(handle.subscriber).__name__,
                    str(e),
                )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, event: TraceEvent) -> TraceEvent:
        """Persist an event and broadcast it to all matching subscribers.

        A timestamp is stamped on the event if it has none. The broadcast
        is enqueued before persistence starts and never waits for a
        subscriber to receive the event.

        Args:
            event: The trace event to ingest.

        Returns:
            The event as persisted (with its timestamp).

        Raises:
            DatabaseError: If the store fails to persist the event.
        """
        if event.timestamp is None:
            event = event.model_copy(update={"timestamp": self._next_timestamp()})
        else:
            stamped = event.timestamp
            if stamped.tzinfo is None:
                stamped = stamped.replace(tzinfo=timezone.utc)
            stamped = self._claim_timestamp(stamped)
            if stamped != event.timestamp:
                event = event.model_copy(update={"timestamp": stamped})

        self._broadcast(event)
        try:
            await self._persist(event)
        except Exception as e:
            logger.error(
                "Failed to persist trace event",
                extra={**event.to_log_dict(), "error": str(e)},
            )
            raise
        return event

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + _TICK
        now = self._claim_timestamp(now)
        self._last_timestamp = now
        return now

    def _claim_timestamp(self, timestamp: datetime) -> datetime:
        """Move a timestamp forward until no retained event shares it."""
        taken = self._retained_timestamps
        index = bisect.bisect_left(taken, timestamp)
        while index < len(taken) and taken[index] == timestamp:
            timestamp += _TICK
            index += 1
        taken.insert(index, timestamp)
        if len(taken) > self._retention_limit:
            del taken[: len(taken) - self._retention_limit]
        return timestamp

    async def _persist(self, event: TraceEvent) -> None:
        await self._store.append(event)
        try:
            await self._store.trim(self._retention_limit)
        except Exception as e:
            # The event itself is stored; an over-long log is trimmed next time.
            logger.warning(
                "Failed to trim trace events",
                extra={"retention_limit": self._retention_limit, "error": str(e)},
            )

    def _broadcast(self, event: TraceEvent) -> None:
        alert: Optional[Alert] = None
        for handle in list(self._subscriptions.values()):
            if not handle.matches(event):
                continue
            if alert is None and event.is_alert:
                alert = Alert.from_event(event)
            self._enqueue(handle, event, alert)

    def _enqueue(
        self,
        handle: SubscriptionHandle,
        event: TraceEvent,
        alert: Optional[Alert],
    ) -> None:
        if handle.task is None or handle.task.done():
            handle.queue = asyncio.Queue(maxsize=self._max_pending)
            handle.task = asyncio.get_running_loop().create_task(
                self._delivery_loop(handle, handle.queue)
            )
        try:
            handle.queue.put_nowait((event, alert))
        except asyncio.QueueFull:
            handle.dropped += 1
            logger.warning(
                "Subscriber queue full, dropping trace event",
                extra={
                    "subscription_id": handle.id,
                    "event_type": event.event_type.value,
                    "trace_id": event.id,
                    "dropped_events": handle.dropped,
                },
            )

    async def _delivery_loop(self, handle: SubscriptionHandle, queue: asyncio.Queue) -> None:
        while True:
            event, alert = await queue.get()
            try:
                await self._deliver(handle, event, alert)
            finally:
                queue.task_done()

    async def _deliver(
        self,
        handle: SubscriptionHandle,
        event: TraceEvent,
        alert: Optional[Alert],
    ) -> None:
        try:
            await handle.subscriber.push(event)
            if alert is not None:
                await handle.subscriber.alert(alert)
        except Exception as e:
            logger.error(
                "Failed to deliver trace event to %s: %s",
                type(handle.subscriber).__name__,
                str(e),
                extra={
                    "subscription_id": handle.id,
                    "event_type": event.event_type.value,
                    "trace_id": event.id,
                    "error": str(e),
                },
            )

    # ------------------------------------------------------------------
    # Recording helpers
    # ------------------------------------------------------------------

    async def record(
        self,
        event_type: TraceEventType,
        payload: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
    ) -> TraceEvent:
        """Build and ingest a trace event."""
        return await self.ingest(
            TraceEvent(
                event_type=event_type,
                worker_id=worker_id,
                work_item_id=work_item_id,
                payload=payload or {},
            )
        )

    async def record_agent_state(
        self,
        worker_id: str,
        status: str,
        work_item_id: Optional[str] = None,
        **details: Any,
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.AGENT_STATE,
            {"status": status, **details},
            worker_id=worker_id,
            work_item_id=work_item_id,
        )

    async def record_work_item_update(
        self,
        work_item_id: str,
        worker_id: Optional[str] = None,
        **details: Any,
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.WORK_ITEM_UPDATE,
            details,
            worker_id=worker_id,
            work_item_id=work_item_id,
        )

    async def record_tool_call(
        self,
        worker_id: str,
        tool_name: str,
        work_item_id: Optional[str] = None,
        success: bool = True,
        **details: Any,
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.TOOL_CALL,
            {"tool_name": tool_name, "success": success, **details},
            worker_id=worker_id,
            work_item_id=work_item_id,
        )

    async def record_error(
        self,
        message: str,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
        error_type: str = "error",
        **details: Any,
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.ERROR,
            {"message": message, "error_type": error_type, **details},
            worker_id=worker_id,
            work_item_id=work_item_id,
        )

    async def record_approval_required(
        self,
        work_item_id: str,
        transition: str,
        worker_id: Optional[str] = None,
        **details: Any,
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.APPROVAL_REQUIRED,
            {"transition": transition, **details},
            worker_id=worker_id,
            work_item_id=work_item_id,
        )

    async def record_metric_update(
        self,
        worker_id: str,
        metrics: Dict[str, Any],
    ) -> TraceEvent:
        return await self.record(
            TraceEventType.METRIC_UPDATE,
            dict(metrics),
            worker_id=worker_id,
        )

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    async def get_traces(self, filters: Optional[TraceFilter] = None) -> List[TraceEvent]:
        """Return persisted events matching the filters, newest first."""
        filters = filters or TraceFilter()
        return await self._store.query(**filters.model_dump())

    async def get_traces_for_worker(self, worker_id: str, limit: int = 100) -> List[TraceEvent]:
        return await self.get_traces(TraceFilter(worker_id=worker_id, limit=limit))

    async def get_traces_for_work_item(
        self, work_item_id: str, limit: int = 100
    ) -> List[TraceEvent]:
        return await self.get_traces(TraceFilter(work_item_id=work_item_id, limit=limit))

    async def get_recent_errors(self, limit: int = 20) -> List[TraceEvent]:
        return await self.get_traces(
            TraceFilter(event_type=TraceEventType.ERROR, limit=limit)
        )

    async def get_trace_stats_by_event_type(self) -> Dict[str, int]:
        """Count retained events per event type (every type listed)."""
        events = await self._store.query(limit=self._retention_limit)
        counts = Counter(event.event_type.value for event in events)
        return {event_type.value: counts.get(event_type.value, 0) for event_type in TraceEventType}

    async def get_tool_call_stats(self) -> ToolCallStats:
        """Aggregate retained tool_call events by tool and by worker."""
        events = await self._store.query(
            event_type=TraceEventType.TOOL_CALL,
            limit=self._retention_limit,
        )
        by_tool = Counter(str(event.payload.get("tool_name", "unknown")) for event in events)
        workers = {event.worker_id for event in events if event.worker_id}
        return ToolCallStats(
            total_calls=len(events),
            by_tool=dict(by_tool),
            workers_with_tool_calls=len(workers),
            average_calls_per_worker=len(events) / len(workers) if workers else 0.0,
        )
