#!/usr/bin/env python3
"""
Operator commands for the scheduled notification dispatcher.

Usage:
    python -m app.cli process-due                 # Fire due notifications (production only)
    python -m app.cli process-due --force         # Allow running outside production
    python -m app.cli process-due --limit 20      # Cap the number of records picked up
    python -m app.cli stats                       # Counts per status and delivery outcome
    python -m app.cli create-tables               # Create the database schema
"""

import argparse
import asyncio
import json
import sys
import uuid

from app.config.settings import settings
from app.db.db import create_tables
from app.db.session import SessionLocal
from app.services.notifications.authorization import CallerContext
from app.services.notifications.dispatcher import NotificationDispatcher
from app.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)
from app.utils.context import request_id_scope
from app.utils.logging import get_logger

logger = get_logger()

SYSTEM_CALLER = CallerContext(user_id="system", roles=frozenset({settings.ADMIN_ROLE}))


def process_due(limit=None, force=False) -> int:
    if settings.ENVIRONMENT != "production" and not force:
        logger.warning(
            f"Refusing to dispatch in {settings.ENVIRONMENT}; pass --force to run anyway"
        )
        return 1

    with request_id_scope(f"cli-{uuid.uuid4()}"):
        report = asyncio.run(NotificationDispatcher().process_due(limit=limit))

    print(json.dumps(report.model_dump(by_alias=True), indent=2))
    return 0 if not report.failures else 2


def show_stats() -> int:
    with SessionLocal() as db_session:
        service = ScheduledNotificationService(db_session)
        stats = asyncio.run(service.stats(SYSTEM_CALLER))

    print(json.dumps(stats.model_dump(by_alias=True), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="app.cli", description="Scheduled notification operator commands"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process-due", help="Fire scheduled notifications that are due now"
    )
    process_parser.add_argument(
        "--limit", type=int, default=None, help="Maximum records to process"
    )
    process_parser.add_argument(
        "--force",
        action="store_true",
        help="Run even when ENVIRONMENT is not production",
    )

    subparsers.add_parser("stats", help="Show scheduled notification statistics")
    subparsers.add_parser("create-tables", help="Create database tables")

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "process-due":
        return process_due(limit=args.limit, force=args.force)

    if args.command == "stats":
        return show_stats()

    if args.command == "create-tables":
        create_tables()
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
