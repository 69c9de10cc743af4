from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import TypeVar

from app.core.config import settings
from app.models.common import utcnow
from app.schemas.notification import NotificationItem, NotificationPatch, RealtimeEvent
from app.services.auth import AuthSession
from app.services.notifications import NotificationQueries
from app.services.optimistic import run_optimistic
from app.services.realtime import CHANNEL_ERROR, SUBSCRIBED, TIMED_OUT

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[["NotificationStore"], None]

FETCH_FAILED = "Failed to fetch notifications."
READ_FAILED = "Failed to update notification status."
READ_ALL_FAILED = "Failed to update all notifications."
DELETE_FAILED = "Failed to delete notification."
CHANNEL_FAILED = "Realtime connection error."
CHANNEL_TIMED_OUT = "Realtime connection timed out."


class NotificationStore:
    """Client-side view of one user's notifications.

    ``items`` is kept newest-first and unique by id. ``unread_count`` is
    tracked separately from ``items`` so the badge does not depend on how many
    pages are loaded. Remote failures never raise out of the public methods;
    they land in ``last_error`` and roll back the optimistic change that
    caused them.

    One instance is shared by every surface that shows notifications; use
    ``subscribe`` to be told about changes.
    """

    def __init__(
        self,
        session: AuthSession,
        queries: NotificationQueries,
        *,
        page_size: int | None = None,
        request_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.page_size = page_size or settings.notifications_page_size
        self.items: list[NotificationItem] = []
        self.unread_count = 0
        self.page = 0
        self.has_more = True
        self.last_error: str | None = None

        self._queries = queries
        self._timeout = request_timeout if request_timeout is not None else settings.request_timeout
        self._clock = clock
        self._inflight = 0
        self._generation = 0
        self._tombstones: set[str] = set()
        self._deleting: set[str] = set()
        # Read state of rows seen only through pushes, keyed by id.
        self._pushed_read: dict[str, bool] = {}
        self._own_read_stamps: set[datetime] = set()
        # Rows pushed while a first page is in flight; None when no load runs.
        self._pushed_during_load: dict[str, NotificationItem] | None = None
        self._listeners: list[Listener] = []
        self._closed = False

    @property
    def user_id(self) -> str:
        return self.session.user_id

    @property
    def loading(self) -> bool:
        return self._inflight > 0

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, notification_id: str) -> NotificationItem | None:
        index = self._index(notification_id)
        return self.items[index] if index is not None else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        # Requests still in flight resolve into a dead store and are dropped.
        self._closed = True
        self._listeners.clear()

    # -- reads -------------------------------------------------------------

    async def load_first_page(self) -> None:
        if self._closed:
            return
        self._generation += 1
        generation = self._generation
        self._inflight += 1
        self.last_error = None
        self._pushed_during_load = {}
        self._notify()

        page_result, count_result = await asyncio.gather(
            self._call(self._queries.select_page(self.user_id, self.page_size, 0)),
            self._call(self._queries.select_unread_count(self.user_id)),
            return_exceptions=True,
        )
        self._inflight -= 1
        if not self._current(generation):
            return
        pushed = self._pushed_during_load or {}
        self._pushed_during_load = None

        # Rows pushed after the server took its page snapshot.
        missed: list[NotificationItem] = []
        if isinstance(page_result, BaseException):
            logger.error("Failed to fetch notifications for user_id=%s", self.user_id, exc_info=page_result)
            self.last_error = FETCH_FAILED
        else:
            self.items = self._fresh(page_result, known=set())
            page_ids = {item.id for item in self.items}
            missed = [row for row in pushed.values() if row.id not in page_ids and row.id not in self._tombstones]
            for row in missed:
                self._insert_ordered(row)
            self.page = 1
            self.has_more = len(page_result) == self.page_size

        if isinstance(count_result, BaseException):
            logger.error("Failed to fetch unread count for user_id=%s", self.user_id, exc_info=count_result)
            self.last_error = self.last_error or FETCH_FAILED
        else:
            self.unread_count = int(count_result) + sum(1 for row in missed if not row.is_read)
            self._pushed_read.clear()

        self._notify()

    async def load_next_page(self) -> None:
        if self._closed or self.loading or not self.has_more:
            return
        generation = self._generation
        offset = self.page * self.page_size
        self._inflight += 1
        self.last_error = None
        self._notify()

        try:
            rows = await self._call(self._queries.select_page(self.user_id, self.page_size, offset))
        except Exception:
            logger.exception("Failed to fetch notifications page at offset=%s for user_id=%s", offset, self.user_id)
            self._inflight -= 1
            if self._current(generation):
                self.last_error = FETCH_FAILED
                self._notify()
            return

        self._inflight -= 1
        if not self._current(generation):
            return
        # Pushed inserts shift server offsets, so pages can overlap.
        self.items.extend(self._fresh(rows, known={item.id for item in self.items}))
        self.page += 1
        self.has_more = len(rows) == self.page_size
        self._notify()

    async def refresh_unread_count(self) -> None:
        if self._closed:
            return
        try:
            count = await self._call(self._queries.select_unread_count(self.user_id))
        except Exception:
            logger.exception("Failed to fetch unread count for user_id=%s", self.user_id)
            return
        if self._closed:
            return
        self.unread_count = int(count)
        self._pushed_read.clear()
        self._notify()

    # -- mutations ---------------------------------------------------------

    async def mark_as_read(self, notification_id: str) -> None:
        if self._closed:
            return
        item = self.get(notification_id)
        if item is None or item.is_deleted or item.is_read:
            return

        read_at = self._clock()
        self._own_read_stamps.add(read_at)
        optimistic = item.model_copy(update={"read_at": read_at})

        def snapshot() -> tuple[NotificationItem, bool]:
            return item, self.unread_count > 0

        def apply() -> None:
            self._replace(notification_id, optimistic)
            self.unread_count = max(0, self.unread_count - 1)
            self._notify()

        def restore(saved: tuple[NotificationItem, bool]) -> None:
            prior, decremented = saved
            if self._closed:
                return
            if self.get(notification_id) != optimistic:
                logger.info("Skipping read rollback for notification id=%s, state moved on", notification_id)
                return
            self._replace(notification_id, prior)
            if decremented:
                self.unread_count += 1

        outcome = await run_optimistic(
            label="mark_as_read",
            snapshot=snapshot,
            apply=apply,
            remote=lambda: self._queries.update_read_at(self.user_id, notification_id, read_at),
            restore=restore,
            timeout=self._timeout,
        )
        if self._closed:
            return
        if not outcome.ok:
            self.last_error = READ_FAILED
        elif not outcome.result:
            logger.info("Notification id=%s was already read server-side", notification_id)
        self._notify()

    async def mark_all_as_read(self) -> None:
        if self._closed or self.unread_count == 0:
            return
        read_at = self._clock()
        self._own_read_stamps.add(read_at)

        def apply() -> None:
            self.items = [
                item.model_copy(update={"read_at": read_at})
                if not item.is_read and not item.is_deleted
                else item
                for item in self.items
            ]
            self.unread_count = 0
            self._notify()

        async def restore(_: None) -> None:
            # Per-item read_at stays optimistic; only the badge is re-derived.
            await self.refresh_unread_count()

        outcome = await run_optimistic(
            label="mark_all_as_read",
            snapshot=lambda: None,
            apply=apply,
            remote=lambda: self._queries.update_read_at_bulk(self.user_id, read_at),
            restore=restore,
            timeout=self._timeout,
        )
        if self._closed:
            return
        if not outcome.ok:
            self.last_error = READ_ALL_FAILED
        self._notify()

    async def delete_notification(self, notification_id: str) -> None:
        if self._closed:
            return
        index = self._index(notification_id)
        if index is None:
            return
        item = self.items[index]

        def snapshot() -> tuple[NotificationItem, bool]:
            return item, not item.is_read and self.unread_count > 0

        def apply() -> None:
            self.items = [x for x in self.items if x.id != notification_id]
            self._deleting.add(notification_id)
            if not item.is_read:
                self.unread_count = max(0, self.unread_count - 1)
            self.last_error = None
            self._notify()

        def restore(saved: tuple[NotificationItem, bool]) -> None:
            prior, decremented = saved
            if self._closed:
                return
            if notification_id in self._tombstones or self._index(notification_id) is not None:
                logger.info("Skipping delete rollback for notification id=%s, state moved on", notification_id)
                return
            self._insert_ordered(prior)
            if decremented:
                self.unread_count += 1

        outcome = await run_optimistic(
            label="delete_notification",
            snapshot=snapshot,
            apply=apply,
            remote=lambda: self._queries.update_deleted(self.user_id, notification_id),
            restore=restore,
            timeout=self._timeout,
        )
        self._deleting.discard(notification_id)
        if self._closed:
            return
        if not outcome.ok:
            self.last_error = DELETE_FAILED
        else:
            self._tombstones.add(notification_id)
            logger.debug("Notification id=%s marked as deleted", notification_id)
        self._notify()

    async def open_notification(self, notification_id: str) -> str | None:
        """Mark a notification read on click and hand back where to navigate."""
        item = self.get(notification_id)
        if item is None:
            return None
        if not item.is_read:
            await self.mark_as_read(notification_id)
        return item.target_url

    # -- push --------------------------------------------------------------

    def handle_event(self, event: RealtimeEvent) -> None:
        if event.event == "insert":
            self.handle_push_insert(event.row)
        else:
            self.handle_push_update(event.old_row, event.row)

    def handle_push_insert(self, row: NotificationItem) -> None:
        if self._closed or not self._owned(row):
            return
        if row.is_deleted or row.id in self._tombstones or self._index(row.id) is not None:
            return
        self.items.insert(0, row)
        if self._pushed_during_load is not None:
            self._pushed_during_load[row.id] = row
        if not row.is_read:
            self.unread_count += 1
        self._notify()

    def handle_push_update(self, old_row: NotificationPatch | None, new_row: NotificationItem) -> None:
        """Apply a pushed row change.

        Cached rows are compared against the cache. Rows outside the loaded
        pages still count towards ``unread_count``, so for those the read
        state comes from an earlier push or from ``old_row``.
        """
        if self._closed or not self._owned(new_row):
            return
        index = self._index(new_row.id)
        cached = self.items[index] if index is not None else None
        if self._pushed_during_load is not None and new_row.id in self._pushed_during_load:
            self._pushed_during_load[new_row.id] = new_row

        if new_row.is_deleted:
            accounted = new_row.id in self._tombstones or new_row.id in self._deleting
            self._tombstones.add(new_row.id)
            if cached is not None:
                del self.items[index]
                if not cached.is_read:
                    self.unread_count = max(0, self.unread_count - 1)
            elif accounted or not self._was_unread(new_row.id, old_row):
                return
            else:
                self.unread_count = max(0, self.unread_count - 1)
            self._notify()
            return

        if cached is None:
            self._apply_uncached_read_state(old_row, new_row)
            return
        self.items[index] = new_row
        if not cached.is_read and new_row.is_read:
            self.unread_count = max(0, self.unread_count - 1)
        elif cached.is_read and not new_row.is_read:
            self.unread_count += 1
        if old_row is not None and old_row.has("read_at") and (old_row.read_at is None) != (not cached.is_read):
            logger.debug("Cached read state for id=%s differed from the pushed old row", new_row.id)
        self._notify()

    def _apply_uncached_read_state(self, old_row: NotificationPatch | None, new_row: NotificationItem) -> None:
        was_unread = self._was_unread(new_row.id, old_row)
        self._pushed_read[new_row.id] = new_row.is_read
        if new_row.read_at is not None and new_row.read_at in self._own_read_stamps:
            # Echo of a bulk read this store already counted.
            return
        if was_unread is None:
            logger.debug("No prior read state for pushed notification id=%s", new_row.id)
            return
        if was_unread and new_row.is_read:
            self.unread_count = max(0, self.unread_count - 1)
        elif not was_unread and not new_row.is_read:
            self.unread_count += 1
        else:
            return
        self._notify()

    def _was_unread(self, notification_id: str, old_row: NotificationPatch | None) -> bool | None:
        if notification_id in self._pushed_read:
            return not self._pushed_read[notification_id]
        if old_row is not None and old_row.has("read_at"):
            return old_row.read_at is None
        return None

    def handle_channel_status(self, status: str, error: Exception | None = None) -> None:
        if self._closed:
            return
        if status == SUBSCRIBED:
            logger.info("Notifications channel subscribed for user_id=%s", self.user_id)
            return
        if status == CHANNEL_ERROR:
            logger.error("Notifications channel error for user_id=%s: %s", self.user_id, error)
            self.last_error = CHANNEL_FAILED
        elif status == TIMED_OUT:
            logger.warning("Notifications channel timed out for user_id=%s", self.user_id)
            self.last_error = CHANNEL_TIMED_OUT
        else:
            return
        self._notify()

    # -- internals ---------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self._timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    def _current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def _owned(self, row: NotificationItem) -> bool:
        if row.user_id != self.user_id:
            logger.warning("Ignoring pushed notification id=%s for another user", row.id)
            return False
        return True

    def _index(self, notification_id: str) -> int | None:
        for index, item in enumerate(self.items):
            if item.id == notification_id:
                return index
        return None

    def _replace(self, notification_id: str, item: NotificationItem) -> None:
        index = self._index(notification_id)
        if index is not None:
            self.items[index] = item

    def _insert_ordered(self, item: NotificationItem) -> None:
        # Same ordering as the page query: created_at desc, then id desc.
        key = (item.created_at, item.id)
        for index, other in enumerate(self.items):
            if (other.created_at, other.id) < key:
                self.items.insert(index, item)
                return
        self.items.append(item)

    def _fresh(self, rows: Iterable[NotificationItem], *, known: set[str]) -> list[NotificationItem]:
        out: list[NotificationItem] = []
        seen = set(known)
        for row in rows:
            if row.is_deleted or row.id in seen or row.id in self._tombstones:
                continue
            seen.add(row.id)
            out.append(row)
        return out

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Notification store listener failed")
