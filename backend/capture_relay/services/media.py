"""Post-upload media processing.

A ``process_media`` job resolves the stored artifact for a capture and, once
it has a public URL, queues the webhook delivery with ``file_url`` filled in.
"""
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from capture_relay.config import Settings
from capture_relay.models.job import QueueJob
from capture_relay.services.capture_events import CaptureEvents, snapshot_from_job
from capture_relay.worker import PermanentJobError

logger = logging.getLogger(__name__)


class MediaStorage(Protocol):
    def artifact_url(self, capture_id: int) -> str | None:
        """Public URL of the stored artifact, or None if nothing is stored."""
        ...


class HttpMediaStorage:
    """Look up artifacts on a media service exposing ``GET /captures/{id}``."""

    def __init__(self, settings: Settings) -> None:
        self._base_url = settings.media_service_url.rstrip("/")
        self._token = settings.media_service_token
        self._timeout = settings.webhook_timeout_seconds

    def artifact_url(self, capture_id: int) -> str | None:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        with httpx.Client(timeout=self._timeout) as client:
            response = client.get(f"{self._base_url}/captures/{capture_id}", headers=headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("url") or None


class MediaProcessor:
    def __init__(self, storage: MediaStorage, events: CaptureEvents) -> None:
        self._storage = storage
        self._events = events

    def handle_job(self, job: QueueJob) -> None:
        """Dispatcher handler for ``process_media`` jobs.

        Storage errors propagate and are retried; a capture with no stored
        artifact fails permanently.
        """
        snapshot = snapshot_from_job(job)
        url = self._storage.artifact_url(job.capture_id)
        if not url:
            raise PermanentJobError(f"No stored artifact for capture {job.capture_id}")

        job_id = self._events.capture_created(
            job.capture_id, snapshot.model_copy(update={"file_url": url})
        )
        logger.info(
            "Media for capture %s available at %s; queued delivery job %s",
            job.capture_id, url, job_id,
        )
