"""Prometheus metrics for agent operations.

Metrics are exposed at the `/metrics` endpoint in Prometheus text format.

Metrics Defined:
- agentops_trace_events_total: Counter of ingested trace events by type
- agentops_alerts_total: Counter of alerts raised by type
- agentops_transitions_total: Counter of executed work-item transitions
- agentops_assignments_total: Counter of assignment outcomes
- agentops_assignment_queue_depth: Gauge of queued assignments
- agentops_workers: Gauge of workers per status
- agentops_worker_tokens_used / _cost_usd / _tool_calls: Pool-wide totals

The MetricsSubscriber plugs into the Event Hub so that counters follow the
trace stream; pool gauges are refreshed from a PoolSummary on scrape.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from agent_ops.events.models import Alert, TraceEvent, TraceEventType
from agent_ops.events.subscribers import TraceSubscriber
from agent_ops.workers.models import PoolSummary, WorkerStatus


logger = logging.getLogger(__name__)


class AgentOpsMetrics:
    """Container for all agent operations Prometheus metrics.

    Supports custom registries so that tests and independent hubs do not
    collide on the default registry.

    Example:
        >>> metrics = AgentOpsMetrics(registry=CollectorRegistry())
        >>> metrics.record_assignment("queued")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.trace_events_total = Counter(
            "agentops_trace_events_total",
            "Total number of trace events ingested by the event hub",
            labelnames=["event_type"],
            registry=self.registry,
        )

        self.alerts_total = Counter(
            "agentops_alerts_total",
            "Total number of alerts raised for error and approval events",
            labelnames=["event_type"],
            registry=self.registry,
        )

        self.transitions_total = Counter(
            "agentops_transitions_total",
            "Total number of executed work item transitions",
            labelnames=["transition"],
            registry=self.registry,
        )

        self.assignments_total = Counter(
            "agentops_assignments_total",
            "Total number of work assignment outcomes",
            labelnames=["result"],
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            "agentops_assignment_queue_depth",
            "Current number of queued work assignments",
            registry=self.registry,
        )

        self.workers = Gauge(
            "agentops_workers",
            "Current number of workers per status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.tokens_used = Gauge(
            "agentops_worker_tokens_used",
            "Tokens used across all workers",
            registry=self.registry,
        )

        self.cost_usd = Gauge(
            "agentops_worker_cost_usd",
            "Cost in USD across all workers",
            registry=self.registry,
        )

        self.tool_calls = Gauge(
            "agentops_worker_tool_calls",
            "Tool calls across all workers",
            registry=self.registry,
        )

        for status in WorkerStatus:
            self.workers.labels(status=status.value).set(0)

    def record_trace_event(self, event_type: str) -> None:
        self.trace_events_total.labels(event_type=event_type).inc()

    def record_alert(self, event_type: str) -> None:
        self.alerts_total.labels(event_type=event_type).inc()

    def record_transition(self, transition: str) -> None:
        self.transitions_total.labels(transition=transition).inc()

    def record_assignment(self, result: str) -> None:
        self.assignments_total.labels(result=result).inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(max(0, depth))

    def record_pool_summary(self, summary: PoolSummary) -> None:
        """Refresh the worker gauges from a pool snapshot."""
        counts = {status: 0 for status in WorkerStatus}
        for worker in summary.workers:
            counts[worker.status] += 1
        for status, count in counts.items():
            self.workers.labels(status=status.value).set(count)
        self.tokens_used.set(summary.total_tokens_used)
        self.cost_usd.set(summary.total_cost_usd)
        self.tool_calls.set(summary.total_tool_calls)


_default_metrics: Optional[AgentOpsMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> AgentOpsMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return AgentOpsMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = AgentOpsMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsSubscriber(TraceSubscriber):
    """Event Hub subscriber that updates Prometheus counters.

    - Every event: agentops_trace_events_total
    - WORK_ITEM_UPDATE with a "transition" payload: agentops_transitions_total
    - Alerts: agentops_alerts_total
    """

    def __init__(
        self,
        metrics: Optional[AgentOpsMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> AgentOpsMetrics:
        return self._metrics

    async def push(self, event: TraceEvent) -> None:
        try:
            self._metrics.record_trace_event(event.event_type.value)
            transition = event.payload.get("transition")
            if event.event_type == TraceEventType.WORK_ITEM_UPDATE and transition:
                self._metrics.record_transition(str(transition))
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "error": str(e)},
            )

    async def alert(self, alert: Alert) -> None:
        self._metrics.record_alert(alert.event_type.value)
