from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import SessionLocal
from app.models.notification import Notification
from app.schemas.notification import NotificationItem, parse_notification
from app.services.errors import TransientNetworkError
from app.services.realtime import build_change_event, publish_change

logger = logging.getLogger(__name__)

Publisher = Callable[[str, dict[str, Any]], Awaitable[None]]


class NotificationQueries(Protocol):
    """Remote query/mutation interface the notification store depends on."""

    async def select_page(self, user_id: str, limit: int, offset: int) -> list[NotificationItem]: ...

    async def select_unread_count(self, user_id: str) -> int: ...

    async def update_read_at(self, user_id: str, notification_id: str, read_at: datetime) -> int: ...

    async def update_read_at_bulk(self, user_id: str, read_at: datetime) -> int: ...

    async def update_deleted(self, user_id: str, notification_id: str) -> int: ...


def _active(user_id: str):
    return and_(Notification.user_id == user_id, Notification.is_deleted.is_(False))


def _old_row(item: NotificationItem) -> dict[str, Any]:
    return item.model_dump(mode="json", include={"id", "user_id", "read_at", "is_deleted"})


async def _publish(publish: Publisher, user_id: str, message: dict[str, Any]) -> None:
    try:
        await publish(user_id, message)
    except Exception:
        logger.exception("Failed to publish notification %s event for user_id=%s", message.get("event"), user_id)


def _parse_rows(rows: list[Notification]) -> list[NotificationItem]:
    items: list[NotificationItem] = []
    for row in rows:
        item = parse_notification(row)
        if item is not None:
            items.append(item)
    return items


async def select_page(db: AsyncSession, user_id: str, *, limit: int, offset: int) -> list[NotificationItem]:
    rows = (
        await db.execute(
            select(Notification)
            .where(_active(user_id))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return _parse_rows(list(rows))


async def select_unread_count(db: AsyncSession, user_id: str) -> int:
    count = (
        await db.execute(
            select(func.count())
            .select_from(Notification)
            .where(_active(user_id), Notification.read_at.is_(None))
        )
    ).scalar_one()
    return int(count or 0)


async def update_read_at(
    db: AsyncSession,
    user_id: str,
    notification_id: str,
    read_at: datetime,
    *,
    publish: Publisher = publish_change,
) -> int:
    row = (
        await db.execute(
            select(Notification).where(
                _active(user_id),
                Notification.id == notification_id,
                Notification.read_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if row is None:
        return 0
    before = parse_notification(row)

    result = await db.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
        )
        .values(read_at=read_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    affected = int(result.rowcount or 0)

    if affected and before is not None:
        after = before.model_copy(update={"read_at": read_at})
        await _publish(publish, user_id, build_change_event("update", after, _old_row(before)))
    return affected


async def update_read_at_bulk(
    db: AsyncSession,
    user_id: str,
    read_at: datetime,
    *,
    publish: Publisher = publish_change,
) -> int:
    rows = (
        await db.execute(select(Notification).where(_active(user_id), Notification.read_at.is_(None)))
    ).scalars().all()
    if not rows:
        return 0
    before = _parse_rows(list(rows))

    result = await db.execute(
        update(Notification)
        .where(
            Notification.id.in_([row.id for row in rows]),
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
            Notification.is_deleted.is_(False),
        )
        .values(read_at=read_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    for item in before:
        after = item.model_copy(update={"read_at": read_at})
        await _publish(publish, user_id, build_change_event("update", after, _old_row(item)))
    return int(result.rowcount or 0)


async def update_deleted(
    db: AsyncSession,
    user_id: str,
    notification_id: str,
    *,
    publish: Publisher = publish_change,
) -> int:
    row = (
        await db.execute(select(Notification).where(_active(user_id), Notification.id == notification_id))
    ).scalar_one_or_none()
    if row is None:
        return 0
    before = parse_notification(row)

    result = await db.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
            Notification.is_deleted.is_(False),
        )
        .values(is_deleted=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    affected = int(result.rowcount or 0)

    if affected and before is not None:
        after = before.model_copy(update={"is_deleted": True})
        await _publish(publish, user_id, build_change_event("update", after, _old_row(before)))
    return affected


async def create_notification(
    db: AsyncSession,
    *,
    user_id: str,
    message: str,
    title: str = "",
    notification_type: str | None = None,
    target_url: str | None = None,
    publish: Publisher = publish_change,
) -> NotificationItem:
    row = Notification(
        user_id=user_id,
        title=title,
        message=message,
        notification_type=notification_type,
        target_url=target_url,
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)

    item = NotificationItem.model_validate(row)
    await _publish(publish, user_id, build_change_event("insert", item))
    return item


class SqlNotificationQueries:
    """``NotificationQueries`` over SQLAlchemy, one session per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        publish: Publisher = publish_change,
    ) -> None:
        self._session_factory = session_factory if session_factory is not None else SessionLocal
        self._publish = publish

    @asynccontextmanager
    async def _session(self, op: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except (SQLAlchemyError, OSError) as exc:
            raise TransientNetworkError(f"{op} failed: {exc}") from exc

    async def select_page(self, user_id: str, limit: int, offset: int) -> list[NotificationItem]:
        async with self._session("select_page") as db:
            return await select_page(db, user_id, limit=limit, offset=offset)

    async def select_unread_count(self, user_id: str) -> int:
        async with self._session("select_unread_count") as db:
            return await select_unread_count(db, user_id)

    async def update_read_at(self, user_id: str, notification_id: str, read_at: datetime) -> int:
        async with self._session("update_read_at") as db:
            return await update_read_at(db, user_id, notification_id, read_at, publish=self._publish)

    async def update_read_at_bulk(self, user_id: str, read_at: datetime) -> int:
        async with self._session("update_read_at_bulk") as db:
            return await update_read_at_bulk(db, user_id, read_at, publish=self._publish)

    async def update_deleted(self, user_id: str, notification_id: str) -> int:
        async with self._session("update_deleted") as db:
            return await update_deleted(db, user_id, notification_id, publish=self._publish)
