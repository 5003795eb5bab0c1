#!/usr/bin/env python3
"""
Periodic e-sign jobs: expire overdue documents, send pre-deadline reminders
and retry completions that failed after the last signature.

Usage:
  python scripts/run_esign_jobs.py [--loop] [--interval 300]

Cron example (every 5 minutes):
  */5 * * * * cd /path/to/backend && python scripts/run_esign_jobs.py >> esign_jobs.log 2>&1
"""

import argparse
import os
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from esign.core.config import settings  # noqa: E402
from esign.core.logging_setup import logger  # noqa: E402
from esign.db.session import open_session  # noqa: E402
from esign.services.audit import AuditService  # noqa: E402
from esign.services.hooks import run_callback  # noqa: E402
from esign.services.notification import build_notification_service  # noqa: E402
from esign.services.post_signature import build_post_signature_service  # noqa: E402
from esign.services.scheduler import run_scheduled_jobs  # noqa: E402


def run_once() -> dict[str, int]:
    with open_session() as session:
        return run_scheduled_jobs(
            session,
            notification_service=build_notification_service(AuditService(session), settings),
            callback_dispatcher=run_callback,
            post_signature_service=build_post_signature_service(session),
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the e-sign expiry, reminder and completion jobs")
    parser.add_argument("--loop", action="store_true", help="Keep running every --interval seconds")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between runs in --loop mode (default: 300)")
    args = parser.parse_args()

    while True:
        try:
            run_once()
        except Exception:
            logger.exception("E-sign scheduler run failed")
            if not args.loop:
                return 1
        if not args.loop:
            return 0
        time.sleep(args.interval)


if __name__ == "__main__":
    sys.exit(main())
