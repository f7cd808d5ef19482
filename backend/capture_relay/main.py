from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy.engine import Engine

import capture_relay.models  # noqa: F401 (registers SQLModel tables)

from capture_relay import __version__, db
from capture_relay.config import Settings, get_settings
from capture_relay.models.job import JobAction, utcnow
from capture_relay.routers import captures, health, queue, webhook
from capture_relay.services.capture_events import CaptureEvents
from capture_relay.services.job_queue import JobQueue
from capture_relay.services.media import HttpMediaStorage, MediaProcessor
from capture_relay.services.notifier import FailureNotifier
from capture_relay.services.webhook import WebhookSender
from capture_relay.worker import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class Components:
    queue: JobQueue
    events: CaptureEvents
    sender: WebhookSender
    dispatcher: Dispatcher


def build_components(settings: Settings, engine: Engine) -> Components:
    """Wire the queue, handlers and dispatcher for one process."""
    job_queue = JobQueue(engine, settings)
    events = CaptureEvents(job_queue, settings)
    sender = WebhookSender(settings)
    dispatcher = Dispatcher(job_queue, settings, notifier=FailureNotifier(settings))

    dispatcher.register_handler(JobAction.SEND_WEBHOOK, sender.handle_job)
    if settings.media_service_url:
        media = MediaProcessor(HttpMediaStorage(settings), events)
        dispatcher.register_handler(JobAction.PROCESS_MEDIA, media.handle_job)
    else:
        logger.info("MEDIA_SERVICE_URL not set; process_media jobs will fail")

    return Components(queue=job_queue, events=events, sender=sender, dispatcher=dispatcher)


def purge_old_jobs(job_queue: JobQueue, retention_days: int) -> int:
    return job_queue.purge_terminal(utcnow() - timedelta(days=retention_days))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger("capture_relay").setLevel(settings.log_level.upper())
    db.ensure_sqlite_dir(settings.db_url)
    db.create_db_and_tables(db.engine)

    components = build_components(settings, db.engine)
    app.state.settings = settings
    app.state.queue = components.queue
    app.state.capture_events = components.events
    app.state.webhook_sender = components.sender
    app.state.dispatcher = components.dispatcher

    if not settings.webhook_active:
        logger.warning("Webhook disabled or WEBHOOK_URL unset; deliveries will be no-ops")

    if settings.dispatcher_enabled:
        components.dispatcher.start()
    else:
        logger.info("In-process dispatcher disabled; use POST /api/queue/process")

    # Daily purge of settled jobs past the retention window
    async def _purge_loop() -> None:
        await asyncio.sleep(60)
        while True:
            try:
                await asyncio.to_thread(
                    purge_old_jobs, components.queue, settings.queue_job_retention_days
                )
            except Exception:
                logger.exception("Error purging old queue jobs")
            await asyncio.sleep(86400)  # 24 hours

    purge_task = asyncio.create_task(_purge_loop())

    yield

    # Shutdown: cancel purge loop
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass
    # Shutdown: stop dispatcher thread
    components.dispatcher.stop()


app = FastAPI(
    title="Capture Relay",
    description="Durable webhook delivery queue for media capture events",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(captures.router)
app.include_router(queue.router)
app.include_router(webhook.router)
