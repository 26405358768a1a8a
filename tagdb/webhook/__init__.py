"""
Webhook delivery for tagdb.

This module provides:
- WebhookJob / WebhookTarget / JobState: the unit of delivery
- WebhookQueue: asyncio worker pool with bounded backlog and retries

Invariants:
    - Jobs are mutated only by the WebhookQueue
    - Every accepted job reaches DELIVERED or FAILED
"""

from .job import JobState, WebhookJob, WebhookTarget
from .queue import RETAINED_JOBS, TerminalListener, WebhookQueue

__all__ = [
    "JobState",
    "RETAINED_JOBS",
    "TerminalListener",
    "WebhookJob",
    "WebhookQueue",
    "WebhookTarget",
]
