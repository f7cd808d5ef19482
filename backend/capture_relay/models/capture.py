from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class CaptureType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SCREEN = "screen"
    IMAGE = "image"


class SeoData(BaseModel):
    score: int = Field(ge=0, le=100)
    focus_keyword: str = ""


class CaptureSnapshot(BaseModel):
    """Capture record as handed over by the capture store.

    Stored verbatim in ``QueueJob.payload_json`` so a retried delivery sends
    exactly what was captured, even if the record changes afterwards.
    """

    id: int = Field(gt=0)
    type: CaptureType
    title: str = Field(min_length=1)
    description: str = ""
    file_url: str = ""
    user_id: int = Field(ge=0)
    user_email: str = ""
    duration: int = Field(default=0, ge=0)  # seconds
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    site_url: str = ""
    seo_data: SeoData | None = None


class CaptureEvent(BaseModel):
    event: Literal["capture_created", "capture_updated", "media_uploaded"]
    capture: CaptureSnapshot
    priority: int | None = None
