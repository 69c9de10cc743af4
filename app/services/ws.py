from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket

from app.schemas.notification import RealtimeEvent
from app.services.realtime import CLOSED, NotificationChannel


class WebSocketRelay:
    """Forwards one user's notification channel to a browser socket."""

    def __init__(self, websocket: WebSocket, user_id: str, *, channel: NotificationChannel | None = None) -> None:
        self.websocket = websocket
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.channel = channel or NotificationChannel(user_id, on_event=self._on_event, on_status=self._on_status)

    def _on_event(self, event: RealtimeEvent) -> None:
        self.queue.put_nowait({"type": "notification", **event.model_dump(mode="json")})

    def _on_status(self, status: str, error: Exception | None) -> None:
        if status == CLOSED:
            return
        self.queue.put_nowait({"type": "status", "status": status, "error": str(error) if error else None})

    async def open(self) -> None:
        await self.channel.open()

    async def pump(self) -> None:
        while True:
            message = await self.queue.get()
            await self.websocket.send_json(message)

    async def close(self) -> None:
        await self.channel.close()
