"""Persistence for workers, work items, templates and trace events.

Two backends implement the same protocols:
- In-memory (default, and for tests)
- PostgreSQL via asyncpg, with JSONB records and row-level locking
"""

from agent_ops.store.base import RecordStore, TraceStore, apply_changes
from agent_ops.store.memory import InMemoryRecordStore, InMemoryTraceStore

__all__ = [
    # Protocols
    "RecordStore",
    "TraceStore",
    "apply_changes",
    # In-memory backend
    "InMemoryRecordStore",
    "InMemoryTraceStore",
]
