from __future__ import annotations

import argparse
import asyncio
import logging

from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.schemas.notification import NotificationCreate, NotificationItem
from app.services.notifications import create_notification

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> NotificationCreate:
    parser = argparse.ArgumentParser(description="Insert a test notification for a user and push it live.")
    parser.add_argument("--user-id", required=True, help="Owning user id (auth uuid)")
    parser.add_argument("--title", default="Test notification")
    parser.add_argument("--message", default="This is a test notification from the script!")
    parser.add_argument("--type", dest="notification_type", default="system")
    parser.add_argument("--target-url", default="/dashboard")
    args = parser.parse_args(argv)
    return NotificationCreate(
        user_id=args.user_id,
        title=args.title,
        message=args.message,
        notification_type=args.notification_type,
        target_url=args.target_url or None,
    )


async def insert_test_notification(payload: NotificationCreate) -> NotificationItem:
    async with SessionLocal() as db:
        return await create_notification(db, **payload.model_dump())


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    payload = _parse_args(argv)
    logger.info("Inserting test notification for user_id=%s", payload.user_id)
    item = asyncio.run(insert_test_notification(payload))
    logger.info("Inserted notification id=%s", item.id)


if __name__ == "__main__":
    main()
