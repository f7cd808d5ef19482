from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText

from capture_relay.config import Settings
from capture_relay.models.job import QueueJob

logger = logging.getLogger(__name__)


class FailureNotifier:
    """Surface permanently failed jobs to the operator."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def job_failed(self, job: QueueJob, error: str) -> bool:
        """Log the failure and email the operator if SMTP is configured.

        Returns True if an email went out.
        """
        logger.error(
            "Job %s (%s) for capture %s permanently failed after %d/%d attempt(s): %s",
            job.id, job.action, job.capture_id, job.attempts, job.max_attempts, error,
        )
        if not self._settings.alert_email:
            return False

        subject, body = self._compose(job, error)
        return self._send_email(self._settings.alert_email, subject, body)

    @staticmethod
    def _compose(job: QueueJob, error: str) -> tuple[str, str]:
        subject = f"[capture-relay] Job {job.id} failed"
        body = (
            f"A {job.action} job has failed after {job.attempts} attempt(s).\n\n"
            f"Capture ID: {job.capture_id}\n"
            f"Job ID: {job.id}\n"
            f"Error: {error}\n\n"
            f"Failed jobs are never retried automatically. "
            f"Check GET /api/queue/jobs?status=failed for details."
        )
        return subject, body

    def _send_email(self, to: str, subject: str, body: str) -> bool:
        """Send an email via SMTP. Returns True on success."""
        if not self._settings.smtp_host:
            logger.warning("SMTP not configured, cannot send failure alert to %s", to)
            return False

        try:
            msg = MIMEText(body)
            msg["Subject"] = subject
            msg["From"] = self._settings.smtp_user
            msg["To"] = to

            with smtplib.SMTP(
                self._settings.smtp_host, self._settings.smtp_port
            ) as server:
                server.starttls()
                if self._settings.smtp_user:
                    server.login(
                        self._settings.smtp_user, self._settings.smtp_password
                    )
                server.send_message(msg)

            logger.info("Failure alert sent to %s: %s", to, subject)
            return True
        except Exception:
            logger.exception("Failed to send failure alert to %s", to)
            return False
