"""Trace capture, fan-out and metrics.

Models:
- TraceEventType, TraceEvent, Alert

Subscribers:
- TraceSubscriber: Abstract receiver interface
- CallbackSubscriber, LoggingSubscriber, NullSubscriber
- MetricsSubscriber: Updates Prometheus counters

The EventHub itself lives in agent_ops.events.hub.
"""

from agent_ops.events.metrics import (
    AgentOpsMetrics,
    MetricsSubscriber,
    generate_metrics_output,
    get_metrics,
)
from agent_ops.events.models import ALERT_EVENT_TYPES, Alert, TraceEvent, TraceEventType
from agent_ops.events.subscribers import (
    CallbackSubscriber,
    LoggingSubscriber,
    NullSubscriber,
    SubscriptionHandle,
    TraceSubscriber,
)

__all__ = [
    # Models
    "ALERT_EVENT_TYPES",
    "Alert",
    "TraceEvent",
    "TraceEventType",
    # Subscribers
    "CallbackSubscriber",
    "LoggingSubscriber",
    "NullSubscriber",
    "SubscriptionHandle",
    "TraceSubscriber",
    # Metrics
    "AgentOpsMetrics",
    "MetricsSubscriber",
    "generate_metrics_output",
    "get_metrics",
]
