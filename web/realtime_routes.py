"""
Real-Time Routes - Live Push Channel

WS /ws/{user_id}?token=<bearer token>

Client messages:
    {"join": "seller-42"}    join a room the caller may listen to
    {"leave": "seller-42"}   leave a room

Server messages:
    {"event": "status-update" | "invoice-update" | "system-alert", "room": ..., "data": ...}
    {"event": "joined" | "left" | "error", ...}

Pushes are produced on worker threads (background tasks); each connection
hands them to its own event loop through an asyncio queue.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from core.settlement import User
from core.settlement.notifications import rooms_for_user
from web.auth import resolve_user


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

POLICY_VIOLATION = 1008


def _may_join(user: User, room: str) -> bool:
    return user.is_admin or room in rooms_for_user(user)


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(jsonable_encoder(message))


@router.websocket("/ws/{user_id}")
async def realtime_channel(
    websocket: WebSocket,
    user_id: str,
    token: Optional[str] = Query(default=None),
):
    services = websocket.app.state.services
    user = resolve_user(services, token)
    if user is None or user.user_id != user_id:
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def send(message: dict) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    registry = services.registry
    connection_id = registry.add_connection(user.user_id, send)
    pump = asyncio.create_task(_pump(websocket, queue))
    logger.info("Live channel opened for %s (%s)", user.user_id, connection_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await queue.put({"event": "error", "message": "Messages must be JSON"})
                continue
            if not isinstance(message, dict):
                await queue.put({"event": "error", "message": "Messages must be JSON objects"})
                continue

            if "join" in message:
                room = str(message["join"])
                if not _may_join(user, room):
                    await queue.put({"event": "error", "message": f"Cannot join {room}"})
                    continue
                registry.join(connection_id, room)
                await queue.put({"event": "joined", "room": room})
            elif "leave" in message:
                room = str(message["leave"])
                registry.leave(connection_id, room)
                await queue.put({"event": "left", "room": room})
            else:
                await queue.put({"event": "error", "message": "Unknown message"})
    except WebSocketDisconnect:
        logger.info("Live channel closed for %s (%s)", user.user_id, connection_id)
    finally:
        registry.remove_connection(connection_id)
        pump.cancel()
