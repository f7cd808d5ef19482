"""Capture event intake: the capture store reports lifecycle events here."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from capture_relay.dependencies import get_dispatcher, get_events
from capture_relay.models.capture import CaptureEvent
from capture_relay.services.capture_events import CaptureEvents
from capture_relay.worker import Dispatcher

router = APIRouter(prefix="/api/captures", tags=["captures"])


class CaptureEventAccepted(BaseModel):
    event: str
    capture_id: int
    job_id: int | None
    queued: bool


@router.post("/events", response_model=CaptureEventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def capture_event(
    body: CaptureEvent,
    events: CaptureEvents = Depends(get_events),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> CaptureEventAccepted:
    """Queue the work for a capture event. Delivery happens asynchronously."""
    hooks = {
        "capture_created": events.capture_created,
        "capture_updated": events.capture_updated,
        "media_uploaded": events.media_uploaded,
    }
    capture = body.capture
    job_id = hooks[body.event](capture.id, capture, priority=body.priority)

    if job_id is not None:
        dispatcher.trigger()
    return CaptureEventAccepted(
        event=body.event,
        capture_id=capture.id,
        job_id=job_id,
        queued=job_id is not None,
    )
