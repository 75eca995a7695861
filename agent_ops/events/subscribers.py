"""Subscriber implementations for Event Hub fan-out.

This module defines the abstract TraceSubscriber interface the Event Hub
pushes to, plus concrete subscribers:

- CallbackSubscriber: Adapts a pair of async callables (used by transports)
- LoggingSubscriber: Writes every trace event as a structured log entry
- NullSubscriber: Discards everything (for testing)

The hub knows nothing about sockets or wire formats. A transport layer
adapts this interface to its protocol (see the /ws route in main.py).
Delivery is at-most-once per event and there is no replay; a subscriber
that reconnects must query persisted history separately. Each subscriber
is fed from its own bounded queue, so a slow receiver only delays itself.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Tuple

from agent_ops.events.models import Alert, TraceEvent, TraceEventType


logger = logging.getLogger(__name__)


class TraceSubscriber(ABC):
    """Abstract base class for live Event Hub receivers.

    push() is invoked with exactly one TraceEvent per call. alert() is a
    separate channel, invoked only for error and approval_required events.
    Failures raised from either method are logged by the hub and never
    affect other subscribers or persistence.
    """

    @abstractmethod
    async def push(self, event: TraceEvent) -> None:
        """Receive one trace event."""

    async def alert(self, alert: Alert) -> None:
        """Receive an alert notification. Ignored by default."""

    async def close(self) -> None:
        """Release resources when unsubscribed. Does nothing by default."""


class CallbackSubscriber(TraceSubscriber):
    """Subscriber that forwards to async callables.

    Example:
        >>> async def send(event):
        ...     await websocket.send_json({"type": "trace", "data": ...})
        >>> subscriber = CallbackSubscriber(on_event=send)
    """

    def __init__(
        self,
        on_event: Callable[[TraceEvent], Awaitable[None]],
        on_alert: Optional[Callable[[Alert], Awaitable[None]]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._on_event = on_event
        self._on_alert = on_alert
        self._on_close = on_close

    async def push(self, event: TraceEvent) -> None:
        await self._on_event(event)

    async def alert(self, alert: Alert) -> None:
        if self._on_alert is not None:
            await self._on_alert(alert)

    async def close(self) -> None:
        if self._on_close is not None:
            await self._on_close()


class LoggingSubscriber(TraceSubscriber):
    """Subscriber that logs trace events using structured logging.

    Events are logged at a level chosen by event type:

    - ERROR: ERROR level
    - APPROVAL_REQUIRED: WARNING level
    - everything else: INFO level (DEBUG for metric updates)
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            TraceEventType.AGENT_STATE: logging.INFO,
            TraceEventType.WORK_ITEM_UPDATE: logging.INFO,
            TraceEventType.TOOL_CALL: logging.INFO,
            TraceEventType.METRIC_UPDATE: logging.DEBUG,
            TraceEventType.ERROR: logging.ERROR,
            TraceEventType.APPROVAL_REQUIRED: logging.WARNING,
        }

    async def push(self, event: TraceEvent) -> None:
        self._logger.log(
            self._log_level_map.get(event.event_type, logging.INFO),
            "Trace event: %s",
            event.event_type.value,
            extra=event.to_log_dict(),
        )


class NullSubscriber(TraceSubscriber):
    """Subscriber that discards all events."""

    async def push(self, event: TraceEvent) -> None:
        pass


class SubscriptionHandle:
    """Opaque token returned by EventHub.subscribe.

    A handle scoped to a worker and/or work item only receives events
    carrying those ids (both must match when both are set). An unscoped
    handle receives everything.

    Attributes:
        id: Unique handle identifier.
        subscriber: The registered receiver.
        worker_id: Only deliver events for this worker, if set.
        work_item_id: Only deliver events for this work item, if set.
        dropped: Events discarded because the delivery queue was full.
    """

    __slots__ = ("id", "subscriber", "worker_id", "work_item_id", "queue", "task", "dropped")

    def __init__(
        self,
        subscriber: TraceSubscriber,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
    ):
        self.id = str(uuid.uuid4())
        self.subscriber = subscriber
        self.worker_id = worker_id
        self.work_item_id = work_item_id
        self.queue: Optional["asyncio.Queue[Tuple[TraceEvent, Optional[Alert]]]"] = None
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def channel(self) -> str:
        if self.worker_id is not None and self.work_item_id is not None:
            return f"agent:{self.worker_id},workItem:{self.work_item_id}"
        if self.worker_id is not None:
            return f"agent:{self.worker_id}"
        if self.work_item_id is not None:
            return f"workItem:{self.work_item_id}"
        return "all"

    def matches(self, event: TraceEvent) -> bool:
        if self.worker_id is not None and event.worker_id != self.worker_id:
            return False
        if self.work_item_id is not None and event.work_item_id != self.work_item_id:
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"SubscriptionHandle(id={self.id!r}, channel={self.channel!r}, "
            f"subscriber={type(self.subscriber).__name__})"
        )
