"""
Webhook job types.

A WebhookJob is created by the Automation Service with a rendered payload
and then owned by the WebhookQueue, which is the only component that
changes its state.

State machine:
    PENDING -> IN_FLIGHT -> DELIVERED
                         -> PENDING (retry scheduled)
                         -> FAILED (attempts exhausted)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Delivery state of a webhook job."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DELIVERED, JobState.FAILED)


@dataclass(frozen=True)
class WebhookTarget:
    """Where and how a payload is delivered."""

    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)


def _job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


@dataclass
class WebhookJob:
    """One webhook delivery.

    Attributes:
        automation_id: Binding that produced the job
        target: Delivery target
        payload: Rendered payload (str sent as text, anything else as JSON)
        max_attempts: Attempts before FAILED; None takes the queue default
        id: Job id
        attempts: Attempts made so far
        next_retry_at: Monotonic time of the scheduled retry, if any
        state: Current JobState
        last_error: Message of the last failed attempt
        last_status_code: HTTP status of the last response, if any
        attempt_times: Monotonic start time of every attempt
        created_at: Creation time (Unix seconds)
    """

    automation_id: str
    target: WebhookTarget
    payload: Any
    max_attempts: int | None = None
    id: str = field(default_factory=_job_id)
    attempts: int = 0
    next_retry_at: float | None = None
    state: JobState = JobState.PENDING
    last_error: str | None = None
    last_status_code: int | None = None
    attempt_times: list[float] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "url": self.target.url,
            "method": self.target.method,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "last_status_code": self.last_status_code,
            "created_at": self.created_at,
        }
