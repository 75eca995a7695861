"""Store protocols for durable keyed records and trace events.

The core talks to persistence only through these protocols:
- RecordStore: keyed create/find/update/delete for one entity type, with
  compare-and-swap on the record's version and atomic numeric increments
- TraceStore: append-only trace log with retention trimming and queries

Guarantees are single-record atomicity only. There are no cross-record
transactions; callers that write two records must tolerate partial
completion.

Nested fields are addressed with dotted paths ("metrics.tokens_used") in
``update`` and ``increment``.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from pydantic import BaseModel

from agent_ops.events.models import TraceEvent, TraceEventType


ModelT = TypeVar("ModelT", bound=BaseModel)


@runtime_checkable
class RecordStore(Protocol[ModelT]):
    """Protocol for keyed persistence of one entity type.

    Records are pydantic models with an ``id`` and a ``version`` field.
    Every successful write bumps ``version`` by one.
    """

    entity: str

    async def create(self, record: ModelT) -> ModelT:
        """Insert a new record.

        Raises:
            InvalidArgumentError: If a record with the same id exists.
        """
        ...

    async def find_by_id(self, record_id: str) -> Optional[ModelT]:
        """Return the record, or None if it does not exist."""
        ...

    async def find_all(self, **filters: Any) -> List[ModelT]:
        """Return records whose top-level fields equal the given filters,
        in creation order."""
        ...

    async def update(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ModelT:
        """Apply a partial update.

        Args:
            record_id: The record to update.
            changes: Field values to set, keyed by (dotted) field path.
            expected_version: If given, the update only applies when the
                stored version still equals it.

        Raises:
            NotFoundError: If the record does not exist.
            VersionConflictError: If expected_version does not match.
        """
        ...

    async def increment(
        self,
        record_id: str,
        deltas: Mapping[str, float],
        changes: Optional[Mapping[str, Any]] = None,
    ) -> ModelT:
        """Atomically add deltas to numeric fields and apply absolute changes.

        Raises:
            NotFoundError: If the record does not exist.
        """
        ...

    async def delete(self, record_id: str) -> None:
        """Remove a record.

        Raises:
            NotFoundError: If the record does not exist.
        """
        ...


@runtime_checkable
class TraceStore(Protocol):
    """Protocol for the append-only trace log."""

    async def append(self, event: TraceEvent) -> None:
        """Persist one trace event. The event must carry a timestamp."""
        ...

    async def trim(self, keep: int) -> int:
        """Delete the oldest events so that at most ``keep`` remain.

        Returns:
            Number of events removed.
        """
        ...

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
        """Return matching events, newest first."""
        ...

    async def count(self) -> int:
        """Return the number of retained events."""
        ...


def split_path(path: str) -> List[str]:
    """Split a dotted field path into its components."""
    parts = path.split(".")
    if not all(parts):
        raise ValueError(f"Invalid field path: {path!r}")
    return parts


def apply_changes(
    data: Dict[str, Any],
    changes: Mapping[str, Any],
    deltas: Optional[Mapping[str, float]] = None,
) -> Dict[str, Any]:
    """Apply dotted-path deltas and changes to a plain dict in place.

    Deltas are applied first, then absolute changes.

    Returns:
        The same dict, for chaining.
    """
    for path, delta in (deltas or {}).items():
        *parents, leaf = split_path(path)
        target = data
        for key in parents:
            target = target.setdefault(key, {})
        target[leaf] = (target.get(leaf) or 0) + delta

    for path, value in changes.items():
        *parents, leaf = split_path(path)
        target = data
        for key in parents:
            target = target.setdefault(key, {})
        target[leaf] = value

    return data
