#!/usr/bin/env python3
"""Run the capture relay dispatcher from a shell or cron.

Useful when the API runs with DISPATCHER_ENABLED=false, or to drain the
queue by hand after an outage.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time

# Allow running from repo root: add backend/ to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from capture_relay import db
from capture_relay.config import get_settings
from capture_relay.main import build_components, purge_old_jobs


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Process the capture relay delivery queue."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single dispatch tick and exit (default)",
    )
    mode.add_argument(
        "--loop",
        action="store_true",
        help="Keep ticking every QUEUE_TICK_INTERVAL_SECONDS until interrupted",
    )
    mode.add_argument(
        "--stats",
        action="store_true",
        help="Print queue statistics as JSON and exit",
    )
    mode.add_argument(
        "--purge",
        action="store_true",
        help="Delete completed/failed jobs older than QUEUE_JOB_RETENTION_DAYS",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.ensure_sqlite_dir(settings.db_url)
    db.create_db_and_tables(db.engine)
    components = build_components(settings, db.engine)

    if args.stats:
        print(json.dumps(components.queue.stats(), indent=2))
        return 0

    if args.purge:
        deleted = purge_old_jobs(components.queue, settings.queue_job_retention_days)
        print(f"Purged {deleted} job(s)", file=sys.stderr)
        return 0

    if args.loop:
        components.dispatcher.start()
        try:
            while components.dispatcher.is_running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            print("Stopping dispatcher...", file=sys.stderr)
        finally:
            components.dispatcher.stop()
        return 0

    result = components.dispatcher.tick()
    print(json.dumps(result.as_dict()))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
