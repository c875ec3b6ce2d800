"""
Live update channel.

Connections are grouped into rooms named ``project:<id>`` and ``user:<id>``.
Publishing is fire-and-forget: nothing is queued for clients that are not
connected, and a socket that fails to receive is dropped from every room.
"""
import logging
from typing import Any, Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def project_room(project_id: Any) -> str:
    return f"project:{project_id}"


def user_room(user_id: Any) -> str:
    return f"user:{user_id}"


class LiveChannel:
    def __init__(self):
        self.rooms: Dict[str, List[WebSocket]] = {}
        self.connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.append(websocket)

    def join(self, room: str, websocket: WebSocket):
        members = self.rooms.setdefault(room, [])
        if websocket not in members:
            members.append(websocket)

    def leave(self, room: str, websocket: WebSocket):
        members = self.rooms.get(room, [])
        if websocket in members:
            members.remove(websocket)
        if not members and room in self.rooms:
            del self.rooms[room]

    def disconnect(self, websocket: WebSocket):
        for room in list(self.rooms):
            self.leave(room, websocket)
        if websocket in self.connections:
            self.connections.remove(websocket)

    async def publish(self, room: str, event: str, data: Any):
        message = {"event": event, "data": data}
        for ws in list(self.rooms.get(room, [])):
            try:
                await ws.send_json(message)
            except Exception:
                logger.info("Dropping socket from %s after failed send", room)
                self.disconnect(ws)

    async def emit_to_project(self, project_id: Any, event: str, data: Any):
        await self.publish(project_room(project_id), event, data)

    async def emit_to_user(self, user_id: Any, event: str, data: Any):
        await self.publish(user_room(user_id), event, data)

    async def handle_message(self, websocket: WebSocket, message: Any):
        """Apply a client control message; anything unrecognised is ignored."""
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        if kind == "join" and message.get("userId"):
            room = user_room(message["userId"])
            self.join(room, websocket)
        elif kind == "joinProject" and message.get("projectId"):
            room = project_room(message["projectId"])
            self.join(room, websocket)
        elif kind == "leaveProject" and message.get("projectId"):
            self.leave(project_room(message["projectId"]), websocket)
            return
        else:
            return
        logger.info("Socket joined %s", room)
        await websocket.send_json({"event": "joined", "data": {"room": room}})

    async def close(self):
        for ws in list(self.connections):
            try:
                await ws.close()
            except Exception:
                logger.debug("Socket already closed during shutdown")
            self.disconnect(ws)
        self.rooms.clear()
