from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import CheckConstraint, DateTime, Index
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current UTC time as a naive datetime.

    Queue timestamp columns are declared as plain ``DateTime`` so they store
    and return naive-UTC values on every backend and SQLModel version.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class JobAction(str, Enum):
    SEND_WEBHOOK = "send_webhook"
    PROCESS_MEDIA = "process_media"


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_queue_jobs_status",
        ),
        CheckConstraint("attempts <= max_attempts", name="ck_queue_jobs_attempts"),
        Index("ix_queue_jobs_claim_order", "status", "priority", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    capture_id: int = Field(index=True)
    action: str
    status: str = Field(default=JobStatus.PENDING.value)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    priority: int = Field(default=10)
    payload_json: str = Field(default="{}")  # capture snapshot taken at enqueue time
    last_error: str | None = Field(default=None)
    next_eligible_at: datetime | None = Field(default=None, sa_type=DateTime)
    claimed_at: datetime | None = Field(default=None, sa_type=DateTime)
    claimed_by: str | None = Field(default=None)
    completed_at: datetime | None = Field(default=None, sa_type=DateTime)
    failed_at: datetime | None = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class QueueJobRead(BaseModel):
    id: int
    capture_id: int
    action: str
    status: str
    attempts: int
    max_attempts: int
    priority: int
    last_error: str | None
    next_eligible_at: datetime | None
    claimed_at: datetime | None
    claimed_by: str | None
    completed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
