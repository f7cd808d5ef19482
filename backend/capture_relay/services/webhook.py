"""Webhook sender: relays capture snapshots to the configured receiver (e.g. n8n)."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from capture_relay import __version__
from capture_relay.config import Settings
from capture_relay.models.capture import CaptureSnapshot
from capture_relay.models.job import QueueJob
from capture_relay.services.capture_events import snapshot_from_job

logger = logging.getLogger(__name__)

_BODY_EXCERPT = 200


class WebhookDeliveryError(Exception):
    """Non-2xx response or transport failure. Always retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class DeliveryResult:
    delivered: bool
    status_code: int | None = None
    skipped_reason: str | None = None


class WebhookSender:
    """Build the flat JSON payload for a capture and POST it."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._url = settings.webhook_url
        self._token = settings.webhook_token
        self._timeout = settings.webhook_timeout_seconds
        self._allowed_types = set(settings.webhook_capture_types)

    def build_payload(self, snapshot: CaptureSnapshot) -> dict:
        payload = {
            "capture_id": snapshot.id,
            "type": snapshot.type.value,
            "title": snapshot.title,
            "description": snapshot.description,
            "file_url": snapshot.file_url,
            "user_id": snapshot.user_id,
            "user_email": snapshot.user_email,
            "duration": snapshot.duration,
            "metadata": snapshot.metadata,
            "timestamp": snapshot.timestamp.isoformat(),
            "site_url": snapshot.site_url or self._settings.site_url,
        }
        if snapshot.seo_data is not None:
            payload["seo_data"] = {
                "score": snapshot.seo_data.score,
                "focus_keyword": snapshot.seo_data.focus_keyword,
            }
        return payload

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"capture-relay/{__version__}",
            "X-Capture-Relay-Site": self._settings.site_url,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _post(self, url: str, payload: dict) -> httpx.Response:
        with httpx.Client(timeout=self._timeout) as client:
            return client.post(url, content=json.dumps(payload), headers=self._headers())

    def deliver(self, snapshot: CaptureSnapshot) -> DeliveryResult:
        """Send one capture. Raises WebhookDeliveryError on any non-2xx outcome.

        A disabled webhook, a missing URL or a capture type outside the
        allow-list is a successful no-op.
        """
        if not self._settings.webhook_active:
            logger.info("Webhook disabled or no URL configured; skipping capture %s", snapshot.id)
            return DeliveryResult(delivered=False, skipped_reason="webhook_not_configured")

        if self._allowed_types and snapshot.type.value not in self._allowed_types:
            logger.info(
                "Capture %s has type %s, not in webhook allow-list; skipping",
                snapshot.id, snapshot.type.value,
            )
            return DeliveryResult(delivered=False, skipped_reason="type_filtered")

        payload = self.build_payload(snapshot)
        try:
            response = self._post(self._url, payload)
        except httpx.HTTPError as exc:
            raise WebhookDeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(
                f"HTTP {response.status_code}: {response.text[:_BODY_EXCERPT]}",
                status_code=response.status_code,
            )

        logger.info(
            "Webhook delivered for capture %s (HTTP %d)", snapshot.id, response.status_code
        )
        return DeliveryResult(delivered=True, status_code=response.status_code)

    def handle_job(self, job: QueueJob) -> None:
        """Dispatcher handler for ``send_webhook`` jobs."""
        self.deliver(snapshot_from_job(job))

    def test_connection(self, url: str | None = None) -> dict:
        """POST a test payload and report the outcome without touching the queue."""
        target = url or self._url
        if not target:
            return {"success": False, "message": "No webhook URL configured", "response_code": None}

        test_payload = {
            "test": True,
            "service": "capture-relay",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "site_url": self._settings.site_url,
        }
        logger.info("Testing webhook connection to %s", target)
        try:
            response = self._post(target, test_payload)
        except httpx.HTTPError as exc:
            logger.warning("Webhook test to %s failed", target, exc_info=True)
            return {"success": False, "message": f"{type(exc).__name__}: {exc}", "response_code": None}

        success = 200 <= response.status_code < 300
        return {
            "success": success,
            "message": "Connection successful" if success else f"Server returned {response.status_code}",
            "response_code": response.status_code,
        }
