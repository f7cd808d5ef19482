"""Dispatch loop for the capture relay queue.

A daemon thread ticks every ``queue_tick_interval_seconds``. Each tick
recovers jobs stuck in processing, claims a batch of eligible jobs and runs
each through the handler registered for its action. Handler outcomes map
onto queue transitions:

- returns normally      -> completed
- raises PermanentJobError -> failed, no retry
- raises anything else  -> retried with backoff until max_attempts

Several processes may run a Dispatcher against the same database; the queue's
atomic claim keeps them from ever sharing a job.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from capture_relay.config import Settings
from capture_relay.models.job import JobAction, JobStatus, QueueJob, utcnow
from capture_relay.services.job_queue import JobQueue
from capture_relay.services.notifier import FailureNotifier

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], None]


class PermanentJobError(Exception):
    """The job cannot succeed by retrying (bad payload, missing artifact...)."""


@dataclass
class TickResult:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    reclaimed: int = 0
    errors: int = 0  # storage errors while settling; job left for the stale sweep

    def as_dict(self) -> dict:
        return asdict(self)


def _default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class Dispatcher:
    """Claims jobs from the queue and runs their action handlers."""

    __slots__ = (
        "_queue",
        "_settings",
        "_notifier",
        "_handlers",
        "_thread",
        "_stop_event",
        "_wake_event",
        "_last_tick_at",
        "_last_result",
        "owner_id",
    )

    def __init__(
        self,
        queue: JobQueue,
        settings: Settings,
        notifier: FailureNotifier | None = None,
        owner_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._settings = settings
        self._notifier = notifier
        self._handlers: dict[str, JobHandler] = {}
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._last_tick_at: datetime | None = None
        self._last_result: TickResult | None = None
        self.owner_id = owner_id or _default_owner_id()

    def register_handler(self, action: str | JobAction, handler: JobHandler) -> None:
        """Route jobs with ``action`` to ``handler``."""
        name = action.value if isinstance(action, JobAction) else action
        self._handlers[name] = handler
        self._queue.register_action(name)

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the daemon ticker thread. No-op while one is already running."""
        if self.is_running:
            logger.info("Dispatcher %s already running", self.owner_id)
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="capture-relay-dispatcher", daemon=True
        )
        self._thread.start()
        logger.info(
            "Dispatcher %s started (tick every %.1fs, batch size %d)",
            self.owner_id,
            self._settings.queue_tick_interval_seconds,
            self._settings.queue_batch_size,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the ticker to stop and wait up to ``timeout`` for the current tick.

        If the tick outlives the wait the thread is kept, so ``is_running``
        stays true until it exits and a later ``stop()`` can join it again.
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                "Dispatcher %s still finishing a tick after %.1fs; thread left running",
                self.owner_id,
                timeout,
            )
            return
        self._thread = None
        logger.info("Dispatcher %s stopped", self.owner_id)

    def trigger(self) -> None:
        """Wake the ticker thread now instead of at the next interval."""
        self._wake_event.set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Unhandled error in dispatch tick")
            self._wake_event.wait(self._settings.queue_tick_interval_seconds)
            self._wake_event.clear()
        logger.info("Dispatcher thread exiting")

    def status(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "running": self.is_running,
            "handlers": sorted(self._handlers),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_result": self._last_result.as_dict() if self._last_result else None,
        }

    # ── Tick ─────────────────────────────────────────────────────────

    def tick(self, now: datetime | None = None) -> TickResult:
        """Run one dispatch cycle synchronously."""
        result = TickResult()

        try:
            reclaimed = self._queue.reclaim_stale(
                self._settings.queue_processing_timeout_seconds, now=now
            )
        except SQLAlchemyError:
            logger.exception("Error reclaiming stale jobs")
        else:
            result.reclaimed = reclaimed.total
            for job_id in reclaimed.failed:
                self._notify_failed(job_id, "Processing timeout")

        try:
            jobs = self._queue.claim_batch(
                self._settings.queue_batch_size, now=now, owner=self.owner_id
            )
        except SQLAlchemyError:
            logger.exception("Error claiming jobs; will retry next tick")
            jobs = []

        result.claimed = len(jobs)
        workers = min(self._settings.dispatch_concurrency, len(jobs))
        if workers > 1:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="capture-relay-job"
            ) as pool:
                outcomes = list(pool.map(lambda job: self._process_job(job, now), jobs))
        else:
            outcomes = [self._process_job(job, now) for job in jobs]

        for outcome in outcomes:
            if outcome is not None:
                setattr(result, outcome, getattr(result, outcome) + 1)

        self._last_tick_at = utcnow()
        self._last_result = result
        if result.claimed or result.reclaimed:
            logger.info(
                "Tick finished: %d claimed, %d completed, %d retried, %d failed, %d reclaimed",
                result.claimed, result.completed, result.retried, result.failed, result.reclaimed,
            )
        return result

    def _process_job(self, job: QueueJob, now: datetime | None) -> str | None:
        """Run one claimed job and settle it. Returns the TickResult field to bump."""
        handler = self._handlers.get(job.action)
        try:
            if handler is None:
                raise PermanentJobError(f"No handler registered for action {job.action!r}")
            handler(job)
        except PermanentJobError as exc:
            return self._settle_failure(job, str(exc), retry=False, now=now)
        except Exception as exc:
            logger.warning(
                "Job %s (%s) for capture %s attempt failed: %s",
                job.id, job.action, job.capture_id, exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return self._settle_failure(job, str(exc) or type(exc).__name__, retry=True, now=now)

        try:
            if not self._queue.complete(job.id, owner=self.owner_id, now=now):
                return None
        except SQLAlchemyError:
            logger.exception("Storage error completing job %s; left in processing", job.id)
            return "errors"
        logger.info("Job %s (%s) for capture %s completed", job.id, job.action, job.capture_id)
        return "completed"

    def _settle_failure(
        self, job: QueueJob, error: str, retry: bool, now: datetime | None
    ) -> str | None:
        try:
            status = self._queue.fail(job.id, error, retry=retry, owner=self.owner_id, now=now)
        except SQLAlchemyError:
            logger.exception("Storage error recording failure of job %s; left in processing", job.id)
            return "errors"

        if status is JobStatus.PENDING:
            return "retried"
        if status is JobStatus.FAILED:
            self._notify_failed(job.id, error)
            return "failed"
        return None

    def _notify_failed(self, job_id: int, error: str) -> None:
        if self._notifier is None:
            return
        try:
            job = self._queue.get(job_id)
        except SQLAlchemyError:
            logger.exception("Could not load failed job %s for notification", job_id)
            return
        if job is not None:
            self._notifier.job_failed(job, error)
