"""
Error types for tagdb.

This module defines all exception types raised by the engine:
- TagDbError: Base exception
- NotFoundError: Referenced node, field or saved query is absent
- CycleDetectedError: Supertag assignment would create an inheritance cycle
- ConfigurationError: Invalid computed field or automation registration
- EvaluationError: A filter encountered malformed data
- DeliveryError: A webhook delivery attempt failed
- BackpressureError: The webhook backlog is full

Invariants:
    - All errors inherit from TagDbError
    - Errors include context for debugging in `details`
    - Mutation-time errors (NotFound, CycleDetected) are raised synchronously
      from the mutating call; the others are isolated per subscription/job
"""

from __future__ import annotations

from typing import Any


class TagDbError(Exception):
    """Base exception for all tagdb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TAGDB_ERROR"
        self.details = details or {}


class NotFoundError(TagDbError):
    """Resource not found.

    Raised when:
    - Node doesn't exist (or is soft-deleted) on a write
    - Field is not defined
    - Saved query or aggregate doesn't exist
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class CycleDetectedError(TagDbError):
    """Supertag assignment would create an inheritance cycle.

    The store is left untouched when this is raised.
    """

    def __init__(
        self,
        supertag_id: str,
        parent_id: str,
        path: list[str] | None = None,
    ) -> None:
        path = path or []
        super().__init__(
            f"Assigning '{parent_id}' to '{supertag_id}' would create a supertag cycle",
            code="CYCLE_DETECTED",
            details={
                "supertag_id": supertag_id,
                "parent_id": parent_id,
                "path": path,
            },
        )
        self.supertag_id = supertag_id
        self.parent_id = parent_id
        self.path = path


class ConfigurationError(TagDbError):
    """Invalid computed field or automation registration.

    Nothing is subscribed when this is raised.
    """

    def __init__(
        self,
        message: str,
        component: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"component": component, "errors": errors or []},
        )
        self.component = component
        self.errors = errors or []


class EvaluationError(TagDbError):
    """A filter encountered malformed data.

    Example: a `gt` comparison on a number field whose value is "abc".
    """

    def __init__(
        self,
        message: str,
        filter_type: str | None = None,
        node_id: str | None = None,
        field_name: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="EVALUATION_ERROR",
            details={
                "filter_type": filter_type,
                "node_id": node_id,
                "field": field_name,
            },
        )
        self.filter_type = filter_type
        self.node_id = node_id
        self.field_name = field_name


class DeliveryError(TagDbError):
    """A webhook delivery attempt failed.

    Transient; the queue retries it with backoff.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code="DELIVERY_ERROR",
            details={"url": url, "status_code": status_code},
        )
        self.url = url
        self.status_code = status_code


class BackpressureError(TagDbError):
    """The webhook backlog is full.

    Callers should treat this as retryable.
    """

    def __init__(self, capacity: int, backlog: int) -> None:
        super().__init__(
            f"Webhook backlog full ({backlog}/{capacity})",
            code="BACKPRESSURE",
            details={"capacity": capacity, "backlog": backlog},
        )
        self.capacity = capacity
        self.backlog = backlog
