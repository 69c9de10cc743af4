from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NotificationItem(BaseModel):
    """Canonical, validated shape of one notification row."""

    model_config = ConfigDict(frozen=True, from_attributes=True, extra="ignore")

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    title: str = ""
    message: str
    created_at: datetime
    read_at: datetime | None = None
    notification_type: str | None = None
    target_url: str | None = None
    is_deleted: bool = False

    @field_validator("created_at", "read_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("title", mode="before")
    @classmethod
    def title_default(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


class NotificationPatch(BaseModel):
    """Partial row as delivered in the ``old_row`` of an update event.

    Only fields present in ``model_fields_set`` were actually sent.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | None = None
    user_id: str | None = None
    read_at: datetime | None = None
    is_deleted: bool | None = None

    @field_validator("read_at")
    @classmethod
    def normalize_read_at(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def has(self, field: str) -> bool:
        return field in self.model_fields_set


class RealtimeEvent(BaseModel):
    event: Literal["insert", "update"]
    table: str = "notifications"
    row: NotificationItem
    old_row: NotificationPatch | None = None


class NotificationCreate(BaseModel):
    user_id: str = Field(min_length=1)
    title: str = Field(default="", max_length=255)
    message: str = Field(min_length=1)
    notification_type: str | None = Field(default=None, max_length=50)
    target_url: str | None = Field(default=None, max_length=1000)


class NotificationPageOut(BaseModel):
    items: list[NotificationItem] = Field(default_factory=list)
    page: int
    has_more: bool


class UnreadCountOut(BaseModel):
    count: int


class MutationOut(BaseModel):
    affected: int


def parse_notification(raw: Mapping[str, Any] | Any) -> NotificationItem | None:
    try:
        return NotificationItem.model_validate(raw)
    except ValidationError:
        logger.warning("Dropping malformed notification row: %r", raw, exc_info=True)
        return None


def parse_realtime_event(raw: Mapping[str, Any] | str | bytes) -> RealtimeEvent | None:
    try:
        if isinstance(raw, (str, bytes)):
            return RealtimeEvent.model_validate_json(raw)
        return RealtimeEvent.model_validate(raw)
    except ValidationError:
        logger.warning("Dropping malformed realtime event: %r", raw, exc_info=True)
        return None
