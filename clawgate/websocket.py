"""
Clawgate - Console Feed
=========================
Manages WebSocket connections to the setup console's live feed (/setup/ws).
This is the wrapper's own channel; gateway WebSockets never pass through
here (they are proxied by proxy.py).

Message types (server -> client):
    - "log"    : Event log line from the wrapper (see log.py)
    - "status" : Gateway state change (stopped/starting/running/crashed)

Message format:
    {
        "type": "status",
        "data": {"status": "running", "pid": 4242},
        "timestamp": "2026-02-08T12:00:00+00:00"
    }
"""

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket


class WebSocketManager:
    """
    Tracks console feed clients and broadcasts messages to all of them.

    Attributes:
        active_connections: Set of currently connected WebSocket instances.
    """

    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new feed connection and add it to the active set."""
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a feed connection from the active set."""
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """
        Send a message to all connected feed clients.

        Adds a timestamp if missing. Clients whose send fails are dropped.

        Args:
            message: Dictionary to send as JSON, with 'type' and 'data' keys.
        """
        if "timestamp" not in message:
            message["timestamp"] = datetime.now(timezone.utc).isoformat()

        payload = json.dumps(message, ensure_ascii=False)

        disconnected = set()
        for ws in list(self.active_connections):
            try:
                await ws.send_text(payload)
            except Exception:
                disconnected.add(ws)

        self.active_connections -= disconnected

    async def send_log(self, text: str) -> None:
        """Convenience: broadcast a log line."""
        await self.broadcast({"type": "log", "data": {"text": text}})

    async def send_status(self, status: str, details: dict | None = None) -> None:
        """Convenience: broadcast a gateway state change."""
        data = {"status": status}
        if details:
            data.update(details)
        await self.broadcast({"type": "status", "data": data})

    @property
    def client_count(self) -> int:
        """Return the number of currently connected clients."""
        return len(self.active_connections)
