"""
Asynchronous webhook delivery queue for tagdb.

The WebhookQueue runs a fixed pool of asyncio worker tasks that deliver
WebhookJobs over httpx, retrying failed attempts with exponential backoff
until the job is delivered or its attempts are exhausted.

Invariants:
    - The backlog (accepted, non-terminal jobs) never exceeds
      backlog_capacity; enqueue raises BackpressureError instead
    - enqueue() is synchronous and safe to call from any thread
    - Retry n waits min(base * multiplier ** (n - 1), max) seconds, plus
      optional jitter
    - Every job ends DELIVERED or FAILED and is reported exactly once to
      terminal listeners
    - stop() never drops a job: queued and interrupted jobs go back to
      PENDING and are dispatched again by the next start()

How to change safely:
    - Only this module mutates WebhookJob state
    - Keep each attempt wrapped in its own timeout
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

import httpx

from ..config import WebhookQueueConfig
from ..errors import BackpressureError, DeliveryError
from .job import JobState, WebhookJob

logger = logging.getLogger(__name__)

TerminalListener = Callable[[WebhookJob], Any]

# Terminal jobs kept for get_job()
RETAINED_JOBS = 10_000


class WebhookQueue:
    """Bounded asyncio worker pool delivering webhook jobs.

    Jobs enqueued before start() are held and dispatched once the workers
    run.

    Example:
        >>> queue = WebhookQueue(WebhookQueueConfig(concurrency=2))
        >>> await queue.start()
        >>> queue.enqueue(WebhookJob("auto-1", WebhookTarget("https://example.com/hook"), {"a": 1}))
        >>> await queue.join()
        >>> await queue.stop()
    """

    def __init__(
        self,
        config: WebhookQueueConfig | None = None,
        client: httpx.AsyncClient | None = None,
        metrics: Any | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            config: Queue configuration (default: WebhookQueueConfig())
            client: HTTP client; one is created on start() if not given
            metrics: Optional EngineMetrics
        """
        self.config = config or WebhookQueueConfig()
        self.metrics = metrics
        self._client = client
        self._owns_client = client is None

        self._lock = threading.Lock()
        self._jobs: OrderedDict[str, WebhookJob] = OrderedDict()
        self._backlog = 0
        self._held: list[WebhookJob] = []
        self._interrupted: list[WebhookJob] = []
        self._listeners: list[TerminalListener] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[WebhookJob] | None = None
        self._workers: list[asyncio.Task] = []
        self._running = False

        self._enqueued = 0
        self._rejected = 0
        self._attempts = 0
        self._delivered = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, job: WebhookJob) -> WebhookJob:
        """Accept a job for delivery.

        Args:
            job: Job to deliver

        Returns:
            The accepted job

        Raises:
            BackpressureError: If the backlog is at capacity
        """
        with self._lock:
            if self._backlog >= self.config.backlog_capacity:
                self._rejected += 1
                raise BackpressureError(self.config.backlog_capacity, self._backlog)
            self._backlog += 1
            self._enqueued += 1
            backlog = self._backlog
            if job.max_attempts is None:
                job.max_attempts = self.config.max_attempts
            job.state = JobState.PENDING
            self._jobs[job.id] = job
            loop = self._loop if self._running else None
            if loop is None:
                self._held.append(job)

        if self.metrics is not None:
            self.metrics.set_queue_depth(backlog)
        logger.debug(
            "Webhook job enqueued",
            extra={"job_id": job.id, "automation_id": job.automation_id, "backlog": backlog},
        )

        if loop is not None:
            self._handoff(loop, job)
        return job

    def _handoff(self, loop: asyncio.AbstractEventLoop, job: WebhookJob) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._put(job)
        else:
            loop.call_soon_threadsafe(self._put, job)

    def _put(self, job: WebhookJob) -> None:
        # A handoff can land after stop(); hold the job for the next start()
        with self._lock:
            queue = self._queue if self._running else None
            if queue is None:
                self._held.append(job)
                return
        queue.put_nowait(job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning("Webhook queue already running")
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        if self._client is None:
            self._client = httpx.AsyncClient()
            self._owns_client = True

        self._workers = [
            asyncio.create_task(self._worker(n), name=f"tagdb-webhook-{n}")
            for n in range(self.config.concurrency)
        ]
        with self._lock:
            self._running = True
            held, self._held = self._held, []
        for job in held:
            self._queue.put_nowait(job)

        logger.info(
            "Webhook queue started",
            extra={
                "concurrency": self.config.concurrency,
                "backlog_capacity": self.config.backlog_capacity,
                "held_jobs": len(held),
            },
        )

    async def stop(self) -> None:
        """Cancel the workers.

        Jobs still queued, in flight or waiting for a retry go back to
        PENDING and are held until the next start(). Their attempt counts
        are kept.
        """
        if not self._running:
            return

        logger.info("Stopping webhook queue", extra={"backlog": self.backlog})
        with self._lock:
            self._running = False
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        requeued, self._interrupted = self._interrupted, []
        if self._queue is not None:
            while not self._queue.empty():
                requeued.append(self._queue.get_nowait())
                self._queue.task_done()
        for job in requeued:
            job.state = JobState.PENDING
            job.next_retry_at = None
        with self._lock:
            self._held = requeued + self._held
            self._queue = None
            held = len(self._held)

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Webhook queue stopped", extra={"held_jobs": held})

    async def join(self) -> None:
        """Wait until every dispatched job is terminal."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            job = await queue.get()
            try:
                await self._process(job)
            except asyncio.CancelledError:
                self._interrupted.append(job)
                raise
            except Exception as e:
                logger.error(
                    f"Webhook worker error: {e}",
                    exc_info=True,
                    extra={"job_id": job.id, "worker_id": worker_id},
                )
                job.last_error = str(e)
                self._finish(job, JobState.FAILED)
            finally:
                queue.task_done()

    async def _process(self, job: WebhookJob) -> None:
        max_attempts = job.max_attempts or self.config.max_attempts
        while True:
            job.state = JobState.IN_FLIGHT
            job.next_retry_at = None
            job.attempts += 1
            job.attempt_times.append(time.monotonic())
            self._attempts += 1
            if self.metrics is not None:
                self.metrics.record_webhook_attempt()

            try:
                status_code = await self._attempt(job)
            except DeliveryError as e:
                job.last_error = e.message
                job.last_status_code = e.status_code
                if job.attempts >= max_attempts:
                    logger.warning(
                        "Webhook delivery failed, attempts exhausted",
                        extra={"job_id": job.id, "attempts": job.attempts, "error": e.message},
                    )
                    self._finish(job, JobState.FAILED)
                    return

                delay = self.backoff(job.attempts)
                job.state = JobState.PENDING
                job.next_retry_at = time.monotonic() + delay
                logger.info(
                    "Webhook delivery failed, retrying",
                    extra={
                        "job_id": job.id,
                        "attempt": job.attempts,
                        "delay_seconds": delay,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(delay)
                continue

            job.last_status_code = status_code
            job.last_error = None
            self._finish(job, JobState.DELIVERED)
            return

    async def _attempt(self, job: WebhookJob) -> int:
        assert self._client is not None
        target = job.target
        headers = dict(target.headers)
        kwargs: dict[str, Any] = {}
        if isinstance(job.payload, (str, bytes)):
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")
            kwargs["content"] = job.payload
        elif job.payload is not None:
            kwargs["json"] = job.payload

        try:
            response = await asyncio.wait_for(
                self._client.request(target.method, target.url, headers=headers, **kwargs),
                timeout=self.config.attempt_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise DeliveryError(
                f"Attempt timed out after {self.config.attempt_timeout_seconds}s", url=target.url
            ) from None
        except httpx.HTTPError as e:
            raise DeliveryError(f"Transport error: {e}", url=target.url) from e

        if not response.is_success:
            raise DeliveryError(
                f"Target responded {response.status_code}",
                url=target.url,
                status_code=response.status_code,
            )
        return response.status_code

    def backoff(self, attempt: int) -> float:
        """Delay before the retry following a failed attempt."""
        delay = self.config.backoff_delay(attempt)
        if self.config.backoff_jitter > 0:
            delay += random.uniform(0, delay * self.config.backoff_jitter)
        return delay

    def _finish(self, job: WebhookJob, state: JobState) -> None:
        job.state = state
        job.next_retry_at = None
        with self._lock:
            self._backlog -= 1
            backlog = self._backlog
            if state is JobState.DELIVERED:
                self._delivered += 1
            else:
                self._failed += 1
            self._jobs.move_to_end(job.id)
            while len(self._jobs) > RETAINED_JOBS:
                oldest_id, oldest = next(iter(self._jobs.items()))
                if not oldest.state.is_terminal:
                    break
                del self._jobs[oldest_id]

        if self.metrics is not None:
            self.metrics.record_webhook_outcome(state.value)
            self.metrics.set_queue_depth(backlog)
        logger.info(
            "Webhook job finished",
            extra={"job_id": job.id, "state": state.value, "attempts": job.attempts},
        )

        for listener in list(self._listeners):
            try:
                outcome = listener(job)
                if inspect.isawaitable(outcome):
                    asyncio.ensure_future(outcome)
            except Exception as e:
                logger.error(
                    f"Terminal listener failed: {e}",
                    exc_info=True,
                    extra={"job_id": job.id},
                )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def add_terminal_listener(self, listener: TerminalListener) -> Callable[[], None]:
        """Call listener(job) when a job is delivered or failed.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def get_job(self, job_id: str) -> WebhookJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self, state: JobState | None = None) -> list[WebhookJob]:
        with self._lock:
            return [j for j in self._jobs.values() if state is None or j.state is state]

    @property
    def backlog(self) -> int:
        with self._lock:
            return self._backlog

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        with self._lock:
            return {
                "running": self._running,
                "concurrency": self.config.concurrency,
                "backlog": self._backlog,
                "backlog_capacity": self.config.backlog_capacity,
                "enqueued": self._enqueued,
                "rejected": self._rejected,
                "attempts": self._attempts,
                "delivered": self._delivered,
                "failed": self._failed,
            }
