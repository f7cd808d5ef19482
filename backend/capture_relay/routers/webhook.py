from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from capture_relay.dependencies import get_sender
from capture_relay.services.webhook import WebhookSender

router = APIRouter(prefix="/api/webhook", tags=["webhook"])


class WebhookTestRequest(BaseModel):
    url: str | None = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be an http:// or https:// URL")
        return value


@router.post("/test")
async def test_webhook(
    body: WebhookTestRequest | None = None,
    sender: WebhookSender = Depends(get_sender),
) -> dict:
    """Send a test payload to the configured (or given) URL. Does not touch the queue."""
    url = body.url if body else None
    return await asyncio.to_thread(sender.test_connection, url)
