from __future__ import annotations

from capture_relay.models.job import QueueJob  # noqa: F401
