from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, Literal

from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from app.core.config import settings
from app.db.redis import redis_client
from app.schemas.notification import NotificationItem, RealtimeEvent, parse_realtime_event
from app.services.errors import ChannelError

logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

EventHandler = Callable[[RealtimeEvent], None]
StatusHandler = Callable[[str, Exception | None], None]


def channel_name(user_id: str) -> str:
    return f"{settings.realtime_channel_prefix}:{user_id}"


def build_change_event(
    event: Literal["insert", "update"],
    row: NotificationItem,
    old_row: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "table": "notifications",
        "row": row.model_dump(mode="json"),
        "old_row": old_row,
    }


async def publish_change(user_id: str, message: dict[str, Any], *, redis: Redis | None = None) -> None:
    client = redis if redis is not None else redis_client
    await client.publish(channel_name(user_id), json.dumps(message))


class NotificationChannel:
    """Push subscription delivering row-level change events for one user.

    Handlers are plain callables invoked on the event loop; the channel never
    raises into its owner, failures are reported through ``on_status``.
    """

    def __init__(
        self,
        user_id: str,
        *,
        on_event: EventHandler,
        on_status: StatusHandler | None = None,
        redis: Redis | None = None,
        subscribe_timeout: float | None = None,
        poll_timeout: float = 1.0,
    ) -> None:
        self.user_id = user_id
        self.status = CLOSED
        self._on_event = on_event
        self._on_status = on_status
        self._redis = redis if redis is not None else redis_client
        self._subscribe_timeout = (
            subscribe_timeout if subscribe_timeout is not None else settings.realtime_subscribe_timeout_seconds
        )
        self._poll_timeout = poll_timeout
        self._pubsub: PubSub | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return channel_name(self.user_id)

    @property
    def is_open(self) -> bool:
        return self._task is not None and not self._task.done()

    async def open(self) -> None:
        if self._task is not None:
            return
        pubsub = self._redis.pubsub()
        try:
            await asyncio.wait_for(pubsub.subscribe(self.name), timeout=self._subscribe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Realtime subscribe to %s timed out", self.name)
            await self._release(pubsub)
            self._set_status(TIMED_OUT, ChannelError(f"Subscribing to {self.name} timed out"))
            return
        except Exception as exc:
            logger.exception("Realtime subscribe to %s failed", self.name)
            await self._release(pubsub)
            self._set_status(CHANNEL_ERROR, ChannelError(str(exc) or exc.__class__.__name__))
            return

        self._pubsub = pubsub
        self._task = asyncio.create_task(self._listen(pubsub))
        logger.info("Subscribed to %s", self.name)
        self._set_status(SUBSCRIBED, None)

    async def close(self) -> None:
        task, self._task = self._task, None
        pubsub, self._pubsub = self._pubsub, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if pubsub is not None:
            await self._release(pubsub)
        if self.status != CLOSED:
            self._set_status(CLOSED, None)

    async def _listen(self, pubsub: PubSub) -> None:
        try:
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
                if msg and msg.get("data"):
                    self.dispatch(msg["data"])
                await asyncio.sleep(0.02)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Realtime listener for %s failed", self.name)
            self._set_status(CHANNEL_ERROR, ChannelError(str(exc) or exc.__class__.__name__))

    def dispatch(self, data: str | bytes | dict[str, Any]) -> None:
        event = parse_realtime_event(data)
        if event is None or event.table != "notifications":
            return
        if event.row.user_id != self.user_id:
            logger.warning("Ignoring %s event for foreign user on %s", event.event, self.name)
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Realtime handler failed for %s event id=%s", event.event, event.row.id)

    async def _release(self, pubsub: PubSub) -> None:
        try:
            await pubsub.unsubscribe(self.name)
            await pubsub.aclose()
        except Exception:
            logger.exception("Error releasing realtime subscription %s", self.name)

    def _set_status(self, status: str, error: Exception | None) -> None:
        self.status = status
        if self._on_status is None:
            return
        try:
            self._on_status(status, error)
        except Exception:
            logger.exception("Realtime status handler failed for %s", self.name)
