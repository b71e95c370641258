# routers/websocket_router.py — Real-time board channels
import logging
from datetime import datetime, timezone
from typing import Dict, Set, Optional, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from sqlalchemy import select

from auth import AuthService
from database import get_db_context
from models import Board, TeamMember

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("pulseboard.ws")

BOARD_CHANNEL_PREFIX = "board."


def board_channel(board_id: str) -> str:
    return f"{BOARD_CHANNEL_PREFIX}{board_id}"


class ConnectionManager:
    """Tracks one socket per user and the channels each user listens on"""

    def __init__(self):
        self._connections: Dict[str, WebSocket] = {}  # user_id -> ws
        self._subscriptions: Dict[str, Set[str]] = {}  # channel -> {user_ids}

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self._connections[user_id] = websocket
        logger.info(f"WS connected: user={user_id[:8]}")

    def disconnect(self, user_id: str):
        self._connections.pop(user_id, None)
        for channel in list(self._subscriptions.keys()):
            self._subscriptions[channel].discard(user_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]
        logger.info(f"WS disconnected: user={user_id[:8]}")

    def subscribe(self, user_id: str, channel: str):
        self._subscriptions.setdefault(channel, set()).add(user_id)

    def unsubscribe(self, user_id: str, channel: str):
        if channel in self._subscriptions:
            self._subscriptions[channel].discard(user_id)

    async def send_to_user(self, user_id: str, message: dict):
        ws = self._connections.get(user_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception as e:
            logger.warning(f"WS send failed for user={user_id[:8]}: {e}")
            self.disconnect(user_id)

    async def broadcast_to_channel(self, channel: str, message: dict) -> int:
        """Returns the number of subscribers the message was addressed to"""
        subscribers = list(self._subscriptions.get(channel, ()))
        for user_id in subscribers:
            await self.send_to_user(user_id, message)
        return len(subscribers)

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "channels": len(self._subscriptions),
        }


# Global connection manager
manager = ConnectionManager()


async def broadcast_board_change(
    board_id: str,
    action: str,
    data: Dict[str, Any],
    user_id: Optional[str] = None,
) -> None:
    """Publish `{action, data, user_id}` to everyone watching the board; user_id None means 'system'"""
    await manager.broadcast_to_channel(board_channel(board_id), {
        "type": "board.changed",
        "action": action,
        "data": data,
        "user_id": user_id or "system",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


async def _can_subscribe(user_id: str, channel: str) -> bool:
    if not channel.startswith(BOARD_CHANNEL_PREFIX):
        return False
    board_id = channel[len(BOARD_CHANNEL_PREFIX):]
    async with get_db_context() as db:
        result = await db.execute(
            select(TeamMember.id)
            .join(Board, Board.team_id == TeamMember.team_id)
            .where(Board.id == board_id, TeamMember.user_id == user_id)
        )
        return result.first() is not None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Board change feed. Clients send {"type": "subscribe", "channel": "board.<id>"}."""
    payload = AuthService.decode_token_or_none(token)
    user_id = payload.get("sub") if payload else None
    if not user_id:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await manager.connect(websocket, user_id)
    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})

            elif msg_type == "subscribe":
                channel = data.get("channel", "")
                if channel and await _can_subscribe(user_id, channel):
                    manager.subscribe(user_id, channel)
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    await websocket.send_json({"type": "error", "channel": channel, "detail": "Channel not available"})

            elif msg_type == "unsubscribe":
                channel = data.get("channel", "")
                if channel:
                    manager.unsubscribe(user_id, channel)
                    await websocket.send_json({"type": "unsubscribed", "channel": channel})

    except WebSocketDisconnect:
        manager.disconnect(user_id)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(user_id)


@router.get("/ws/stats")
async def websocket_stats():
    """Connection statistics"""
    return manager.get_stats()
