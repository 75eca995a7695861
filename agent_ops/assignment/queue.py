"""FIFO assignment queue, de-duplicated by work item id."""

from collections import OrderedDict
from typing import Iterator, List, Optional

from agent_ops.assignment.models import QueuedAssignment


class AssignmentQueue:
    """Ordered queue holding at most one entry per work item.

    Re-queuing a work item that is already waiting keeps its position and
    replaces the entry's role and approver, so retries are idempotent.
    """

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, QueuedAssignment]" = OrderedDict()

    def put(self, entry: QueuedAssignment) -> int:
        """Add or replace an entry. Returns its 1-based position."""
        existing = self._entries.get(entry.work_item_id)
        if existing is not None:
            entry = entry.model_copy(
                update={"enqueued_at": existing.enqueued_at, "attempts": existing.attempts}
            )
        self._entries[entry.work_item_id] = entry
        return self.position(entry.work_item_id)

    def remove(self, work_item_id: str) -> Optional[QueuedAssignment]:
        return self._entries.pop(work_item_id, None)

    def get(self, work_item_id: str) -> Optional[QueuedAssignment]:
        return self._entries.get(work_item_id)

    def position(self, work_item_id: str) -> int:
        """1-based position of a work item, or 0 if it is not queued."""
        for index, key in enumerate(self._entries, start=1):
            if key == work_item_id:
                return index
        return 0

    def snapshot(self) -> List[QueuedAssignment]:
        return list(self._entries.values())

    def __contains__(self, work_item_id: object) -> bool:
        return work_item_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QueuedAssignment]:
        return iter(self.snapshot())
