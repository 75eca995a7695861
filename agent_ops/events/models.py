"""Trace event models for the Event Hub.

This module defines the data models for observability events:
- TraceEventType: Enum of all trace event types
- TraceEvent: Immutable record of something that happened during execution
- Alert: Derived notification for error and approval_required events

Trace events are append-only. Once the hub has stamped a timestamp on an
event it is never mutated; retention trimming is the only way one goes away.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TraceEventType(str, Enum):
    """Types of trace events captured by the Event Hub.

    Attributes:
        AGENT_STATE: A worker changed lifecycle status.
        WORK_ITEM_UPDATE: A work item changed status or assignment.
        TOOL_CALL: A worker invoked a tool.
        METRIC_UPDATE: A worker reported resource usage.
        ERROR: Something failed; also raised as an alert.
        APPROVAL_REQUIRED: A gated transition is waiting for a human; also
            raised as an alert.
    """

    AGENT_STATE = "agent_state"
    WORK_ITEM_UPDATE = "work_item_update"
    TOOL_CALL = "tool_call"
    METRIC_UPDATE = "metric_update"
    ERROR = "error"
    APPROVAL_REQUIRED = "approval_required"


# Event types that additionally raise an alert notification
ALERT_EVENT_TYPES = frozenset({TraceEventType.ERROR, TraceEventType.APPROVAL_REQUIRED})


class TraceEvent(BaseModel):
    """Immutable, timestamped record of an execution occurrence.

    The timestamp may be omitted by producers; EventHub.ingest stamps one
    on arrival. Consumers reconstructing a timeline across ingestion
    sources should order by timestamp, not by arrival.

    Attributes:
        id: Unique event identifier.
        worker_id: Worker the event concerns, if any.
        work_item_id: Work item the event concerns, if any.
        event_type: Category of the event.
        payload: Opaque event data.
        timestamp: When the event was created (UTC).

    Example:
        >>> event = TraceEvent(
        ...     event_type=TraceEventType.TOOL_CALL,
        ...     worker_id="worker-1",
        ...     payload={"tool_name": "read_file", "duration": 120},
        ... )
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        min_length=1,
        description="Unique event identifier",
    )

    worker_id: Optional[str] = Field(
        default=None,
        description="Worker the event concerns",
    )

    work_item_id: Optional[str] = Field(
        default=None,
        description="Work item the event concerns",
    )

    event_type: TraceEventType = Field(
        ...,
        description="The category of trace event",
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque event data",
    )

    timestamp: Optional[datetime] = Field(
        default=None,
        description="When the event was created (UTC); stamped on ingest if absent",
    )

    @property
    def is_alert(self) -> bool:
        """Whether this event raises an alert notification."""
        return self.event_type in ALERT_EVENT_TYPES

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert the event to a flat dictionary for structured logging."""
        return {
            "trace_id": self.id,
            "event_type": self.event_type.value,
            "worker_id": self.worker_id,
            "work_item_id": self.work_item_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "payload": self.payload,
        }


class Alert(BaseModel):
    """Notification derived from an error or approval_required trace event.

    Delivered on a channel separate from raw trace push so that UIs can
    surface alerts without inspecting every trace event.
    """

    model_config = ConfigDict(frozen=True)

    trace_id: str = Field(..., description="Id of the trace event that raised it")
    event_type: TraceEventType = Field(..., description="error or approval_required")
    message: str = Field(..., description="Human-readable summary")
    worker_id: Optional[str] = None
    work_item_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: TraceEvent) -> "Alert":
        """Build the alert raised by a trace event."""
        if event.event_type == TraceEventType.ERROR:
            message = str(event.payload.get("message") or "Worker reported an error")
        else:
            transition = event.payload.get("transition", "transition")
            message = f"Approval required for {transition}"
        return cls(
            trace_id=event.id,
            event_type=event.event_type,
            message=message,
            worker_id=event.worker_id,
            work_item_id=event.work_item_id,
            timestamp=event.timestamp or datetime.now(timezone.utc),
            payload=dict(event.payload),
        )
