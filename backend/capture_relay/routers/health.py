from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from capture_relay import __version__
from capture_relay.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    # Queue counts
    queue_status: dict | str = "unavailable"
    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        try:
            queue_status = queue.stats()
        except Exception:
            queue_status = "error"

    # Dispatcher thread
    dispatcher_status: dict = {"running": False}
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        dispatcher_status = dispatcher.status()

    settings = getattr(request.app.state, "settings", None)
    webhook_status = "unknown"
    if settings is not None:
        webhook_status = "configured" if settings.webhook_active else "not_configured"

    is_healthy = db_status == "ok" and queue_status != "error"

    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "capture-relay",
        "version": __version__,
        "checks": {
            "database": db_status,
            "queue": queue_status,
            "dispatcher": dispatcher_status,
            "webhook": webhook_status,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "capture-relay",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "capture-relay",
    }
