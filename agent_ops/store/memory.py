"""In-memory store implementations.

Used by default when no database is configured, and by the test suite.
Each mutation is a synchronous read-modify-write with no await between
the read and the write, so it is atomic with respect to every other
coroutine on the event loop. Records are copied on the way in and out;
callers never hold a reference to stored state.
"""

import bisect
import itertools
import logging
from datetime import datetime
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, Type

from agent_ops.errors import InvalidArgumentError, NotFoundError, VersionConflictError
from agent_ops.events.models import TraceEvent, TraceEventType
from agent_ops.store.base import ModelT, apply_changes


logger = logging.getLogger(__name__)


class InMemoryRecordStore(Generic[ModelT]):
    """Dictionary-backed RecordStore for one entity type.

    Attributes:
        entity: Entity name used in NotFound errors ("worker", "work_item").
        model: The pydantic model class stored.
    """

    def __init__(self, model: Type[ModelT], entity: str):
        self.model = model
        self.entity = entity
        self._records: Dict[str, ModelT] = {}

    async def create(self, record: ModelT) -> ModelT:
        record_id = getattr(record, "id")
        if record_id in self._records:
            raise InvalidArgumentError(f"{self.entity} with id {record_id} already exists")
        self._records[record_id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def find_by_id(self, record_id: str) -> Optional[ModelT]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def find_all(self, **filters: Any) -> List[ModelT]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if all(getattr(record, key) == value for key, value in filters.items())
        ]

    async def update(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ModelT:
        existing = self._get_or_raise(record_id)
        if expected_version is not None and existing.version != expected_version:
            raise VersionConflictError(record_id, expected_version)
        return self._write(existing, changes)

    async def increment(
        self,
        record_id: str,
        deltas: Mapping[str, float],
        changes: Optional[Mapping[str, Any]] = None,
    ) -> ModelT:
        existing = self._get_or_raise(record_id)
        return self._write(existing, changes or {}, deltas)

    async def delete(self, record_id: str) -> None:
        self._get_or_raise(record_id)
        del self._records[record_id]

    def clear(self) -> None:
        """Remove every record."""
        self._records.clear()

    def _get_or_raise(self, record_id: str) -> ModelT:
        existing = self._records.get(record_id)
        if existing is None:
            raise NotFoundError(self.entity, record_id)
        return existing

    def _write(
        self,
        existing: ModelT,
        changes: Mapping[str, Any],
        deltas: Optional[Mapping[str, float]] = None,
    ) -> ModelT:
        data = apply_changes(existing.model_dump(), changes, deltas)
        data["version"] = existing.version + 1
        updated = self.model.model_validate(data)
        self._records[updated.id] = updated
        return updated.model_copy(deep=True)


class InMemoryTraceStore:
    """List-backed TraceStore kept sorted by (timestamp, arrival order).

    Trimming removes from the front of the list, which always holds the
    oldest events, so events newer than the retention boundary are never
    removed.
    """

    def __init__(self) -> None:
        self._events: List[Tuple[datetime, int, TraceEvent]] = []
        self._seq = itertools.count()

    async def append(self, event: TraceEvent) -> None:
        if event.timestamp is None:
            raise InvalidArgumentError("trace event must carry a timestamp")
        bisect.insort(self._events, (event.timestamp, next(self._seq), event))

    async def trim(self, keep: int) -> int:
        excess = len(self._events) - keep
        if excess <= 0:
            return 0
        del self._events[:excess]
        logger.debug("Trimmed trace events", extra={"removed": excess, "kept": keep})
        return excess

    async def query(
        self,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
        event_type: Optional[TraceEventType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[TraceEvent]:
        matches = [
            event
            for timestamp, _, event in reversed(self._events)
            if (worker_id is None or event.worker_id == worker_id)
            and (work_item_id is None or event.work_item_id == work_item_id)
            and (event_type is None or event.event_type == event_type)
            and (start is None or timestamp >= start)
            and (end is None or timestamp <= end)
        ]
        return matches[offset:offset + limit]

    async def count(self) -> int:
        return len(self._events)
