"""Durable delivery queue backed by the ``queue_jobs`` table.

Every state change is a single conditional UPDATE guarded by the status the
caller expects the row to be in. Claiming in particular selects and flips
rows in one statement (``UPDATE ... WHERE id IN (SELECT ... LIMIT n)
RETURNING id``), so two dispatchers running against the same database can
never both own a job. On PostgreSQL the inner select also takes
``FOR UPDATE SKIP LOCKED`` so concurrent claimers skip each other's rows
instead of queueing behind them; SQLite serialises writers itself.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from capture_relay.config import Settings
from capture_relay.models.job import (
    TERMINAL_STATUSES,
    JobAction,
    JobStatus,
    QueueJob,
    utcnow,
)
from capture_relay.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000
_CLAIM_ORDER = (col(QueueJob.priority), col(QueueJob.created_at), col(QueueJob.id))


@dataclass
class ReclaimResult:
    requeued: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


class JobQueue:
    """Enqueue, claim and settle delivery jobs."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
        actions: set[str] | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._actions = set(actions) if actions else {a.value for a in JobAction}

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def register_action(self, action: str) -> None:
        """Allow jobs with a custom action name to be enqueued."""
        self._actions.add(action)

    # ── Producer side ────────────────────────────────────────────────

    def enqueue(
        self,
        capture_id: int,
        action: str,
        priority: int | None = None,
        max_attempts: int | None = None,
        payload: dict | None = None,
    ) -> int:
        """Insert a pending job and return its id."""
        action = action.value if isinstance(action, JobAction) else action
        if action not in self._actions:
            raise ValueError(f"Unknown job action: {action!r}")
        if max_attempts is None:
            max_attempts = self._settings.queue_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if priority is None:
            priority = self._settings.queue_default_priority

        job = QueueJob(
            capture_id=capture_id,
            action=action,
            status=JobStatus.PENDING.value,
            priority=priority,
            max_attempts=max_attempts,
            payload_json=json.dumps(payload or {}, default=str),
        )
        with Session(self._engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            job_id = job.id

        logger.debug(
            "Enqueued job %s (%s) for capture %s, priority=%d, max_attempts=%d",
            job_id, action, capture_id, priority, max_attempts,
        )
        return job_id

    # ── Dispatcher side ──────────────────────────────────────────────

    def claim_batch(
        self, limit: int, now: datetime | None = None, owner: str | None = None
    ) -> list[QueueJob]:
        """Atomically move up to ``limit`` eligible jobs to processing.

        Eligible means pending and past ``next_eligible_at`` (or never
        retried). Lower priority values go first, ties break by age.
        """
        if limit < 1:
            return []
        now = now or utcnow()

        eligible = (
            select(QueueJob.id)
            .where(QueueJob.status == JobStatus.PENDING.value)
            .where(
                or_(
                    col(QueueJob.next_eligible_at).is_(None),
                    col(QueueJob.next_eligible_at) <= now,
                )
            )
            .order_by(*_CLAIM_ORDER)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(QueueJob)
            .where(col(QueueJob.id).in_(eligible.scalar_subquery()))
            .where(QueueJob.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.PROCESSING.value,
                claimed_at=now,
                claimed_by=owner,
                updated_at=now,
            )
            .returning(QueueJob.id)
        )

        with self._engine.begin() as conn:
            claimed_ids = list(conn.execute(claim).scalars())

        if not claimed_ids:
            return []

        with Session(self._engine) as session:
            jobs = session.exec(
                select(QueueJob)
                .where(col(QueueJob.id).in_(claimed_ids))
                .order_by(*_CLAIM_ORDER)
            ).all()

        logger.info("Claimed %d job(s) as %s", len(jobs), owner or "anonymous")
        return list(jobs)

    def complete(self, job_id: int, owner: str | None = None, now: datetime | None = None) -> bool:
        """Mark a processing job as completed. The successful attempt counts."""
        now = now or utcnow()
        stmt = (
            update(QueueJob)
            .where(QueueJob.id == job_id)
            .where(QueueJob.status == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.COMPLETED.value,
                attempts=QueueJob.attempts + 1,
                completed_at=now,
                next_eligible_at=None,
                updated_at=now,
            )
        )
        if owner is not None:
            stmt = stmt.where(QueueJob.claimed_by == owner)

        with self._engine.begin() as conn:
            updated = conn.execute(stmt).rowcount == 1

        if not updated:
            logger.warning("Job %s was not in processing (or not owned by %s); completion ignored", job_id, owner)
        return updated

    def fail(
        self,
        job_id: int,
        error: str,
        retry: bool = True,
        owner: str | None = None,
        now: datetime | None = None,
    ) -> JobStatus | None:
        """Record a failed attempt.

        With ``retry`` and attempts left, the job goes back to pending with a
        backoff delay; otherwise it becomes permanently failed. Returns the
        resulting status, or None if the job was no longer ours to settle.
        """
        now = now or utcnow()
        error = (error or "Unknown error")[:_MAX_ERROR_LENGTH]

        with self._engine.begin() as conn:
            current = select(QueueJob.attempts, QueueJob.max_attempts).where(
                QueueJob.id == job_id,
                QueueJob.status == JobStatus.PROCESSING.value,
            )
            if owner is not None:
                current = current.where(QueueJob.claimed_by == owner)
            row = conn.execute(current).first()
            if row is None:
                logger.warning("Job %s was not in processing (or not owned by %s); failure ignored", job_id, owner)
                return None

            attempts = row.attempts + 1
            if retry and self._retry_policy.should_retry(attempts, row.max_attempts):
                status = JobStatus.PENDING
                next_eligible_at = now + self._retry_policy.delay(attempts)
                values = {
                    "status": status.value,
                    "next_eligible_at": next_eligible_at,
                    "claimed_at": None,
                    "claimed_by": None,
                }
            else:
                status = JobStatus.FAILED
                next_eligible_at = None
                values = {
                    "status": status.value,
                    "next_eligible_at": None,
                    "failed_at": now,
                }

            result = conn.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id)
                .where(QueueJob.status == JobStatus.PROCESSING.value)
                .where(QueueJob.attempts == row.attempts)
                .values(attempts=attempts, last_error=error, updated_at=now, **values)
            )
            if result.rowcount != 1:
                logger.warning("Job %s changed while recording failure; ignored", job_id)
                return None

        if status is JobStatus.PENDING:
            logger.info(
                "Scheduled retry %d/%d for job %s at %s: %s",
                attempts + 1, row.max_attempts, job_id, next_eligible_at.isoformat(), error,
            )
        else:
            logger.error(
                "Job %s failed permanently after %d attempt(s): %s", job_id, attempts, error,
            )
        return status

    def reclaim_stale(self, timeout_seconds: int, now: datetime | None = None) -> ReclaimResult:
        """Treat jobs stuck in processing past the timeout as failed attempts.

        Covers dispatchers that crashed after claiming. Jobs with attempts
        left become pending immediately; the rest fail permanently.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stale = and_(
            QueueJob.status == JobStatus.PROCESSING.value,
            col(QueueJob.claimed_at).is_not(None),
            col(QueueJob.claimed_at) < cutoff,
        )
        result = ReclaimResult()

        with self._engine.begin() as conn:
            result.failed = list(
                conn.execute(
                    update(QueueJob)
                    .where(stale)
                    .where(QueueJob.attempts + 1 >= QueueJob.max_attempts)
                    .values(
                        status=JobStatus.FAILED.value,
                        attempts=QueueJob.attempts + 1,
                        last_error="Processing timeout",
                        failed_at=now,
                        updated_at=now,
                    )
                    .returning(QueueJob.id)
                ).scalars()
            )
            result.requeued = list(
                conn.execute(
                    update(QueueJob)
                    .where(stale)
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=QueueJob.attempts + 1,
                        last_error="Processing timeout",
                        next_eligible_at=now,
                        claimed_at=None,
                        claimed_by=None,
                        updated_at=now,
                    )
                    .returning(QueueJob.id)
                ).scalars()
            )

        if result.total:
            logger.warning(
                "Reclaimed %d stale job(s): %d requeued, %d failed",
                result.total, len(result.requeued), len(result.failed),
            )
        return result

    # ── Operator side ────────────────────────────────────────────────

    def mark_failed(self, job_id: int, reason: str = "Cancelled by operator") -> bool:
        """Abandon a job that has not reached a terminal state."""
        now = utcnow()
        with self._engine.begin() as conn:
            updated = conn.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id)
                .where(col(QueueJob.status).not_in(TERMINAL_STATUSES))
                .values(
                    status=JobStatus.FAILED.value,
                    last_error=reason[:_MAX_ERROR_LENGTH],
                    next_eligible_at=None,
                    failed_at=now,
                    updated_at=now,
                )
            ).rowcount == 1
        if updated:
            logger.info("Job %s marked as failed by operator: %s", job_id, reason)
        return updated

    def purge_terminal(self, older_than: datetime) -> int:
        """Delete completed/failed jobs last touched before ``older_than``."""
        with self._engine.begin() as conn:
            deleted = conn.execute(
                delete(QueueJob)
                .where(col(QueueJob.status).in_(TERMINAL_STATUSES))
                .where(QueueJob.updated_at < older_than)
            ).rowcount
        if deleted:
            logger.info("Purged %d terminal job(s) older than %s", deleted, older_than.isoformat())
        return deleted

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, job_id: int) -> QueueJob | None:
        with Session(self._engine) as session:
            return session.get(QueueJob, job_id)

    def list_jobs(
        self,
        status: str | None = None,
        capture_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QueueJob]:
        stmt = select(QueueJob)
        if status is not None:
            stmt = stmt.where(QueueJob.status == status)
        if capture_id is not None:
            stmt = stmt.where(QueueJob.capture_id == capture_id)
        stmt = stmt.order_by(col(QueueJob.created_at).desc(), col(QueueJob.id).desc())
        with Session(self._engine) as session:
            return list(session.exec(stmt.offset(offset).limit(limit)).all())

    def has_open_job(self, capture_id: int, action: str) -> bool:
        """True if the capture already has a pending or processing job for ``action``."""
        with Session(self._engine) as session:
            found = session.exec(
                select(QueueJob.id)
                .where(QueueJob.capture_id == capture_id)
                .where(QueueJob.action == action)
                .where(col(QueueJob.status).not_in(TERMINAL_STATUSES))
                .limit(1)
            ).first()
        return found is not None

    def stats(self) -> dict:
        """Counts per status plus recent failures, for health and the operator API."""
        counts = {s.value: 0 for s in JobStatus}
        with Session(self._engine) as session:
            rows = session.exec(
                select(QueueJob.status, func.count(QueueJob.id)).group_by(QueueJob.status)
            ).all()
            for status, count in rows:
                counts[status] = count

            pending_retries = session.exec(
                select(func.count(QueueJob.id))
                .where(QueueJob.status == JobStatus.PENDING.value)
                .where(QueueJob.attempts > 0)
            ).one()

            recent_failures_rows = session.exec(
                select(QueueJob)
                .where(QueueJob.status == JobStatus.FAILED.value)
                .order_by(col(QueueJob.updated_at).desc())
                .limit(10)
            ).all()

        settled = counts[JobStatus.COMPLETED.value] + counts[JobStatus.FAILED.value]
        success_rate = (
            round(counts[JobStatus.COMPLETED.value] / settled * 100, 2) if settled else 0.0
        )
        return {
            **counts,
            "total": sum(counts.values()),
            "success_rate": success_rate,
            "pending_retries": pending_retries,
            "recent_failures": [
                {
                    "id": j.id,
                    "capture_id": j.capture_id,
                    "action": j.action,
                    "attempts": j.attempts,
                    "last_error": j.last_error,
                    "failed_at": j.failed_at.isoformat() if j.failed_at else None,
                }
                for j in recent_failures_rows
            ],
        }
