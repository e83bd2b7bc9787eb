"""
Run one campaign maintenance tick: status sweep, then reminders.

Meant for cron or a scheduler; each step commits in its own unit of work so a
failing reminder pass does not undo the status sweep.
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime

from moobee.application.notifications import LoggingNotificationDispatcher
from moobee.application.sweeper import send_reminders, sweep_campaigns
from moobee.domain.schemas import to_naive_utc
from moobee.infrastructure.db import create_session_factory, make_engine_and_session
from moobee.infrastructure.logging import get_logger
from moobee.infrastructure.uow import UnitOfWork

logger = get_logger("scripts.run_sweeper")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--now", type=datetime.fromisoformat, default=None, help="ISO timestamp to sweep at")
    parser.add_argument("--database-url", default=None, help="Override the configured database")
    parser.add_argument("--skip-reminders", action="store_true")
    args = parser.parse_args(argv)

    now = to_naive_utc(args.now) if args.now else None
    if args.database_url:
        _, SessionLocal = make_engine_and_session(args.database_url)
    else:
        SessionLocal = create_session_factory()
    uow = UnitOfWork(SessionLocal)
    try:
        with uow.begin() as session:
            summary = sweep_campaigns(session, now=now)
        logger.info(f"Sweep summary: {summary}")
        if not args.skip_reminders:
            with uow.begin() as session:
                sent = send_reminders(session, LoggingNotificationDispatcher(), now=now)
            logger.info(f"Reminded {len(sent['reminded'])} assignments")
    except Exception as e:
        logger.error(f"Sweeper run failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
