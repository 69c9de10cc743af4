import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import build_session_factory
from app.models import Notification  # noqa: F401
from app.schemas.notification import NotificationItem
from app.services.auth import AuthSession
from app.services.errors import TransientNetworkError

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"
BASE_TIME = datetime(2025, 4, 6, 12, 0, tzinfo=timezone.utc)


def make_item(n: int, *, user_id: str = USER_ID, read: bool = False, **extra) -> NotificationItem:
    fields = {
        "id": f"n{n}",
        "user_id": user_id,
        "title": f"Title {n}",
        "message": f"Message {n}",
        "created_at": BASE_TIME - timedelta(minutes=n),
        "read_at": BASE_TIME if read else None,
        "notification_type": "system",
        "target_url": None,
        "is_deleted": False,
    }
    fields.update(extra)
    return NotificationItem(**fields)


class FakeQueries:
    """In-memory stand-in for the remote notifications table."""

    def __init__(self, rows: list[NotificationItem] | None = None) -> None:
        self.rows: dict[str, NotificationItem] = {row.id: row for row in rows or []}
        self.calls: list[tuple] = []
        self.fail: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}

    def add(self, row: NotificationItem) -> None:
        self.rows[row.id] = row

    def gate(self, name: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[name] = event
        return event

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def server_unread(self, user_id: str = USER_ID) -> int:
        return sum(1 for row in self._active(user_id) if row.read_at is None)

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.fail:
            raise TransientNetworkError(f"{name} failed")

    def _active(self, user_id: str) -> list[NotificationItem]:
        rows = [row for row in self.rows.values() if row.user_id == user_id and not row.is_deleted]
        return sorted(rows, key=lambda row: (row.created_at, row.id), reverse=True)

    async def select_page(self, user_id: str, limit: int, offset: int) -> list[NotificationItem]:
        await self._enter("select_page", user_id, limit, offset)
        return self._active(user_id)[offset : offset + limit]

    async def select_unread_count(self, user_id: str) -> int:
        await self._enter("select_unread_count", user_id)
        return self.server_unread(user_id)

    async def update_read_at(self, user_id: str, notification_id: str, read_at: datetime) -> int:
        await self._enter("update_read_at", user_id, notification_id, read_at)
        row = self.rows.get(notification_id)
        if row is None or row.user_id != user_id or row.is_deleted or row.read_at is not None:
            return 0
        self.rows[notification_id] = row.model_copy(update={"read_at": read_at})
        return 1

    async def update_read_at_bulk(self, user_id: str, read_at: datetime) -> int:
        await self._enter("update_read_at_bulk", user_id, read_at)
        affected = 0
        for row in self._active(user_id):
            if row.read_at is None:
                self.rows[row.id] = row.model_copy(update={"read_at": read_at})
                affected += 1
        return affected

    async def update_deleted(self, user_id: str, notification_id: str) -> int:
        await self._enter("update_deleted", user_id, notification_id)
        row = self.rows.get(notification_id)
        if row is None or row.user_id != user_id or row.is_deleted:
            return 0
        self.rows[notification_id] = row.model_copy(update={"is_deleted": True})
        return 1


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.messages: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, name: str) -> None:
        if self.redis.hang_subscribe:
            await asyncio.Event().wait()
        if self.redis.fail_subscribe:
            raise ConnectionError("redis unavailable")
        self.channels.add(name)

    async def unsubscribe(self, name: str) -> None:
        self.channels.discard(name)

    async def aclose(self) -> None:
        self.closed = True

    async def get_message(self, ignore_subscribe_messages: bool = True, timeout: float = 1.0):
        try:
            return self.messages.get_nowait()
        except asyncio.QueueEmpty:
            return None


class FakeRedis:
    def __init__(self) -> None:
        self.pubsubs: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []
        self.hang_subscribe = False
        self.fail_subscribe = False

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        receivers = 0
        for pubsub in self.pubsubs:
            if channel in pubsub.channels and not pubsub.closed:
                pubsub.messages.put_nowait({"type": "message", "channel": channel, "data": data})
                receivers += 1
        return receivers


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def auth_session() -> AuthSession:
    return AuthSession(user_id=USER_ID, email="writer@example.com")


@pytest.fixture
def fake_queries() -> FakeQueries:
    return FakeQueries()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
