import logging
from typing import Dict, List

from fastapi import WebSocket

from convoyhub.models.domain import ConvoyLocation

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Keeps the open websocket connections of each convoy and fans out location snapshots."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, convoy_id: str, websocket: WebSocket):
        await websocket.accept()
        if convoy_id not in self.active_connections:
            self.active_connections[convoy_id] = []
        self.active_connections[convoy_id].append(websocket)
        logger.info("New connection to convoy %s. Total clients: %d", convoy_id, len(self.active_connections[convoy_id]))

    def disconnect(self, convoy_id: str, websocket: WebSocket):
        connections = self.active_connections.get(convoy_id)
        if connections is None:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            logger.debug("Convoy %s has no clients left", convoy_id)
            del self.active_connections[convoy_id]

    async def broadcast(self, convoy_id: str, message: dict):
        for connection in list(self.active_connections.get(convoy_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning("Dropping dead connection on convoy %s: %s", convoy_id, e)
                self.disconnect(convoy_id, connection)

    async def broadcast_location(self, convoy_id: str, user_id: int, location: ConvoyLocation):
        message = {
            "type": "location_update",
            "convoy_id": convoy_id,
            "user_id": user_id,
            "center": location.model_dump(mode="json"),
        }
        await self.broadcast(convoy_id, message)

    async def broadcast_status(self, convoy_id: str, event: str, **data):
        await self.broadcast(convoy_id, {"type": event, "convoy_id": convoy_id, **data})


manager = ConnectionManager()
