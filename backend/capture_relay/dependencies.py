"""FastAPI dependency injection for the components wired up in the lifespan."""

from __future__ import annotations

from fastapi import HTTPException, Request

from capture_relay.services.capture_events import CaptureEvents
from capture_relay.services.job_queue import JobQueue
from capture_relay.services.webhook import WebhookSender
from capture_relay.worker import Dispatcher


def _from_state(request: Request, name: str, label: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{label} unavailable")
    return svc


def get_queue(request: Request) -> JobQueue:
    """Inject the JobQueue singleton from app state."""
    return _from_state(request, "queue", "Job queue")


def get_dispatcher(request: Request) -> Dispatcher:
    """Inject the Dispatcher singleton from app state."""
    return _from_state(request, "dispatcher", "Dispatcher")


def get_events(request: Request) -> CaptureEvents:
    return _from_state(request, "capture_events", "Capture event intake")


def get_sender(request: Request) -> WebhookSender:
    return _from_state(request, "webhook_sender", "Webhook sender")
