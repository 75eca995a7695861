"""Error taxonomy for the agent operations core.

Every core operation surfaces one of these typed failures to its caller.
Each class carries an ``http_status`` hint that the transport adapter in
main.py uses to map failures to responses; the core itself never looks at it.

Taxonomy:
- NotFoundError: referenced worker, work item or template does not exist
- InvalidStateError: operation illegal for the entity's current status
- InvalidArgumentError: malformed or empty input, non-positive limits
- CapacityExceededError: pool ceiling reached on spawn
- InvalidTransitionError: work-item status pair not legal, or blocked
- ApprovalRequiredError: gated transition requested without an approver
- NotAssignableError: assignment requested for an ineligible work item
- VersionConflictError: optimistic-lock conflict that outlived its retries
- DatabaseError: store backend failure
"""

from typing import Any, Optional


class AgentOpsError(Exception):
    """Base class for all agent operations failures.

    Attributes:
        message: Human-readable error description.
        http_status: Suggested status code for the transport layer.
    """

    http_status: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(AgentOpsError):
    """Raised when a referenced entity does not exist.

    Attributes:
        entity: Kind of entity that was looked up ("worker", "work_item", ...).
        entity_id: The identifier that was not found.
    """

    http_status = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id {entity_id} not found")


class InvalidStateError(AgentOpsError):
    """Raised when an operation is illegal for an entity's current status.

    Attributes:
        entity_id: The entity the operation targeted.
        current: The status the entity was in.
        operation: Name of the rejected operation.
    """

    http_status = 409

    def __init__(
        self,
        entity_id: str,
        current: Any,
        operation: str,
        message: Optional[str] = None,
    ):
        self.entity_id = entity_id
        self.current = getattr(current, "value", current)
        self.operation = operation
        super().__init__(
            message
            or f"Cannot {operation} {entity_id}: current status is {self.current}"
        )


class InvalidArgumentError(AgentOpsError, ValueError):
    """Raised for malformed or empty required input.

    Also a ValueError so callers validating plain arguments can catch it
    the usual way.
    """

    http_status = 400


class CapacityExceededError(AgentOpsError):
    """Raised when a spawn is attempted while the pool is at its ceiling.

    Attributes:
        active: Number of active workers (including reserved slots).
        max_workers: The configured ceiling.
    """

    http_status = 409

    def __init__(self, active: int, max_workers: int):
        self.active = active
        self.max_workers = max_workers
        super().__init__(
            "Cannot spawn worker: maximum worker limit reached "
            f"({active}/{max_workers})"
        )


class InvalidTransitionError(AgentOpsError):
    """Raised when a work-item status change is not a legal transition.

    Attributes:
        from_status: The item's current status.
        to_status: The requested target status.
        reason: Why the transition was rejected.
    """

    http_status = 409

    def __init__(self, from_status: Any, to_status: Any, reason: Optional[str] = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.reason = reason or (
            f"Invalid transition from {self.from_status} to {self.to_status}"
        )
        super().__init__(self.reason)


class ApprovalRequiredError(AgentOpsError):
    """Raised when a gated transition is requested without an approver.

    Attributes:
        work_item_id: The item whose transition was gated.
        transition: Name of the gated transition (e.g. "review_to_done").
    """

    http_status = 409

    def __init__(self, work_item_id: str, transition: str):
        self.work_item_id = work_item_id
        self.transition = transition
        super().__init__(
            f"Transition {transition} for work item {work_item_id} requires approval"
        )


class NotAssignableError(AgentOpsError):
    """Raised when assignment is requested for an item not ready to start.

    Attributes:
        work_item_id: The rejected work item.
        reason: Why the item cannot be assigned.
    """

    http_status = 409

    def __init__(self, work_item_id: str, reason: str):
        self.work_item_id = work_item_id
        self.reason = reason
        super().__init__(f"Work item {work_item_id} is not assignable: {reason}")


class VersionConflictError(AgentOpsError):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        entity_id: The entity whose update was rejected.
        expected_version: The version the writer read.
    """

    http_status = 409

    def __init__(self, entity_id: str, expected_version: int):
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for {entity_id}: expected version "
            f"{expected_version}, but it was modified concurrently"
        )


class DatabaseError(AgentOpsError):
    """Raised when a store backend operation fails.

    Attributes:
        original_error: The underlying exception, if any.
    """

    http_status = 503

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)
