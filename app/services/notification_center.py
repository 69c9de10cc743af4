from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from app.services.auth import AuthSession
from app.services.notification_store import NotificationStore
from app.services.notifications import NotificationQueries, SqlNotificationQueries
from app.services.realtime import NotificationChannel

logger = logging.getLogger(__name__)

StoreFactory = Callable[[AuthSession, NotificationQueries], NotificationStore]
ChannelFactory = Callable[[NotificationStore], NotificationChannel]


def _default_channel(store: NotificationStore) -> NotificationChannel:
    return NotificationChannel(
        store.user_id,
        on_event=store.handle_event,
        on_status=store.handle_channel_status,
    )


class NotificationCenter:
    """Owns the notification store and its push channel for the active session.

    A new session gets a fresh store and a fresh subscription; signing out
    tears both down with nothing left pending. Every surface reads
    ``center.store`` so they all see the same cache.
    """

    def __init__(
        self,
        queries: NotificationQueries | None = None,
        *,
        store_factory: StoreFactory = NotificationStore,
        channel_factory: ChannelFactory = _default_channel,
    ) -> None:
        self._queries = queries if queries is not None else SqlNotificationQueries()
        self._store_factory = store_factory
        self._channel_factory = channel_factory
        self._lock = asyncio.Lock()
        self.session: AuthSession | None = None
        self.store: NotificationStore | None = None
        self.channel: NotificationChannel | None = None

    async def set_session(self, session: AuthSession | None) -> NotificationStore | None:
        async with self._lock:
            if session is not None and self.session is not None and session.user_id == self.session.user_id:
                self.session = session
                return self.store

            await self._teardown()
            if session is None:
                logger.info("Notification session cleared")
                return None

            store = self._store_factory(session, self._queries)
            channel = self._channel_factory(store)
            self.session, self.store, self.channel = session, store, channel
            logger.info("Starting notification session for user_id=%s", session.user_id)

            await channel.open()
            await store.load_first_page()
            return store

    async def reconnect(self) -> None:
        async with self._lock:
            if self.store is None or self.channel is None:
                return
            await self.channel.close()
            self.channel = self._channel_factory(self.store)
            await self.channel.open()
            await self.store.load_first_page()

    async def close(self) -> None:
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        store, channel = self.store, self.channel
        self.session, self.store, self.channel = None, None, None
        if store is not None:
            store.close()
        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.exception("Error closing notification channel for user_id=%s", channel.user_id)
