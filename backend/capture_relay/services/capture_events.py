"""Turn capture lifecycle events into queue jobs.

The capture store calls these hooks; each one snapshots the capture into the
job payload so the eventual delivery does not depend on the store again.
"""
from __future__ import annotations

import logging

from pydantic import ValidationError

from capture_relay.config import Settings
from capture_relay.models.capture import CaptureSnapshot
from capture_relay.models.job import JobAction, QueueJob
from capture_relay.services.job_queue import JobQueue
from capture_relay.worker import PermanentJobError

logger = logging.getLogger(__name__)


def snapshot_from_job(job: QueueJob) -> CaptureSnapshot:
    """Parse the capture snapshot stored on ``job``.

    Raises PermanentJobError if the payload is unusable, since retrying
    cannot fix it.
    """
    try:
        snapshot = CaptureSnapshot.model_validate_json(job.payload_json)
    except ValidationError as exc:
        raise PermanentJobError(
            f"Malformed capture snapshot for capture {job.capture_id}: "
            f"{exc.error_count()} validation error(s)"
        ) from exc
    if snapshot.id != job.capture_id:
        raise PermanentJobError(
            f"Snapshot is for capture {snapshot.id}, job is for capture {job.capture_id}"
        )
    return snapshot


class CaptureEvents:
    def __init__(self, queue: JobQueue, settings: Settings) -> None:
        self._queue = queue
        self._settings = settings

    def capture_created(
        self, capture_id: int, snapshot: CaptureSnapshot, priority: int | None = None
    ) -> int:
        """Queue a webhook delivery for a new capture."""
        return self._enqueue(capture_id, JobAction.SEND_WEBHOOK, snapshot, priority)

    def capture_updated(
        self, capture_id: int, snapshot: CaptureSnapshot, priority: int | None = None
    ) -> int | None:
        """Queue a delivery for an edited capture, if update relaying is on."""
        if not self._settings.webhook_send_updates:
            logger.debug("Update relaying disabled; ignoring update of capture %s", capture_id)
            return None
        return self._enqueue(capture_id, JobAction.SEND_WEBHOOK, snapshot, priority)

    def media_uploaded(
        self, capture_id: int, snapshot: CaptureSnapshot, priority: int | None = None
    ) -> int:
        """Queue post-upload media processing; it enqueues the delivery when done."""
        return self._enqueue(capture_id, JobAction.PROCESS_MEDIA, snapshot, priority)

    def _enqueue(
        self,
        capture_id: int,
        action: JobAction,
        snapshot: CaptureSnapshot,
        priority: int | None,
    ) -> int:
        if capture_id != snapshot.id:
            raise ValueError(
                f"capture_id {capture_id} does not match snapshot id {snapshot.id}"
            )
        job_id = self._queue.enqueue(
            capture_id,
            action.value,
            priority=priority,
            payload=snapshot.model_dump(mode="json"),
        )
        logger.info("Queued %s job %s for capture %s", action.value, job_id, capture_id)
        return job_id
