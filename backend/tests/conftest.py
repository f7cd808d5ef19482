from __future__ import annotations

import os

# Set test environment BEFORE importing capture_relay modules.
# capture_relay.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any capture_relay imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("DISPATCHER_ENABLED", "false")
os.environ["WEBHOOK_URL"] = ""
os.environ["ALERT_EMAIL"] = ""
os.environ["MEDIA_SERVICE_URL"] = ""

from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import capture_relay.models  # noqa: F401 (registers SQLModel tables)
from capture_relay.config import Settings
from capture_relay.main import app as fastapi_app
from capture_relay.models.capture import CaptureSnapshot
from capture_relay.services.job_queue import JobQueue

WEBHOOK_URL = "https://n8n.example.com/webhook/captures"


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="file_engine")
def file_engine_fixture(tmp_path):
    """File-backed SQLite engine with a real connection pool, for thread tests."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'queue.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Settings / component fixtures ─────────────────────────────────────


def make_settings(**overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "site_url": "https://captures.example.com",
        "webhook_url": WEBHOOK_URL,
        "webhook_token": "",
        "queue_max_attempts": 3,
        "queue_batch_size": 5,
        "queue_retry_base_delay_seconds": 0,
        "queue_retry_max_delay_seconds": 10,
        "alert_email": "",
        "media_service_url": "",
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return make_settings()


@pytest.fixture(name="queue")
def queue_fixture(engine, settings) -> JobQueue:
    return JobQueue(engine, settings)


def make_snapshot(capture_id: int = 42, **overrides) -> CaptureSnapshot:
    data = {
        "id": capture_id,
        "type": "video",
        "title": f"Capture {capture_id}",
        "description": "Screen walkthrough",
        "file_url": f"https://cdn.example.com/captures/{capture_id}.webm",
        "user_id": 7,
        "user_email": "author@example.com",
        "duration": 95,
        "metadata": {"resolution": "1920x1080"},
        "timestamp": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        "site_url": "https://captures.example.com",
    }
    data.update(overrides)
    return CaptureSnapshot(**data)


def make_response(status_code: int, text: str = "", url: str = WEBHOOK_URL) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        text=text,
        request=httpx.Request("POST", url),
    )


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(engine):
    """FastAPI TestClient whose lifespan wires components onto the test engine."""
    with patch("capture_relay.db.engine", engine):
        with TestClient(fastapi_app) as client:
            yield client
