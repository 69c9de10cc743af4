from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from app.services.auth import get_session_from_ws
from app.services.ws import WebSocketRelay

logger = logging.getLogger(__name__)

notifications_ws_router = APIRouter(tags=["ws-notifications"])


@notifications_ws_router.websocket("/notifications")
async def ws_notifications(websocket: WebSocket) -> None:
    await websocket.accept()

    relay: WebSocketRelay | None = None
    pump_task = None

    try:
        try:
            session = get_session_from_ws(websocket)
        except HTTPException:
            await websocket.close(code=4401)
            return

        relay = WebSocketRelay(websocket, session.user_id)
        await relay.open()
        pump_task = asyncio.create_task(relay.pump())

        while True:
            msg = await websocket.receive_text()
            if msg.lower().strip() == "ping":
                await websocket.send_text('{"type":"pong"}')

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Notifications websocket failed")
        try:
            await websocket.close(code=1011)
        except Exception:
            pass
    finally:
        if pump_task:
            pump_task.cancel()
        if relay is not None:
            await relay.close()
