import logging
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Registry of connected viewers that receive analysis results live."""

    def __init__(self):
        self.clients: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        self.clients.add(websocket)
        await websocket.accept()
        logger.info(f"New WebSocket connection ({len(self.clients)} connected)")

    def disconnect(self, websocket: WebSocket):
        self.clients.discard(websocket)

    async def broadcast(self, data: Dict[str, Any]):
        for client in list(self.clients):
            try:
                await client.send_json(data)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning(f"Dropping WebSocket client: {e}")
                self.disconnect(client)
