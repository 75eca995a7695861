"""Pooled agent workers and their lifecycle.

The WorkerPool bounds the number of active (idle + working) workers and
mediates every worker status change.
"""

from agent_ops.workers.models import (
    ACTIVE_STATUSES,
    DEFAULT_CONTEXT_WINDOW_LIMIT,
    AgentRole,
    MetricsDelta,
    PoolSummary,
    Worker,
    WorkerMetrics,
    WorkerStatus,
)
from agent_ops.workers.pool import PoolConfig, WorkerPool

__all__ = [
    # Models
    "ACTIVE_STATUSES",
    "DEFAULT_CONTEXT_WINDOW_LIMIT",
    "AgentRole",
    "MetricsDelta",
    "PoolSummary",
    "Worker",
    "WorkerMetrics",
    "WorkerStatus",
    # Pool
    "PoolConfig",
    "WorkerPool",
]
