"""WebSocket fan-out for switch progress and registry changes.

Clients subscribe to topics (``switch_progress``, ``accounts_changed``,
``refresh_result``) or to everything with ``*``.

>>> registry = WebSocketRegistry()
>>> registry.client_count
0
"""

import json
import logging
import time
from typing import Optional

from fastapi import WebSocket

from switchboard.switch import ProgressEvent

logger = logging.getLogger(__name__)

TOPIC_SWITCH_PROGRESS = "switch_progress"
TOPIC_ACCOUNTS_CHANGED = "accounts_changed"
TOPIC_REFRESH_RESULT = "refresh_result"


class WebSocketRegistry:
    """Topic-based WebSocket client registry."""

    def __init__(self):
        self._clients: dict[WebSocket, set[str]] = {}

    async def connect(self, ws: WebSocket, topics: Optional[list[str]] = None):
        self._clients[ws] = set(topics or ["*"])

    def disconnect(self, ws: WebSocket):
        """Remove a client; unknown clients are ignored.

        >>> WebSocketRegistry().disconnect(object())
        """
        self._clients.pop(ws, None)

    async def broadcast(self, topic: str, payload: Optional[dict] = None):
        """Send an event to all clients subscribed to *topic* or ``*``.

        Clients whose send fails are dropped.
        """
        message = json.dumps(
            {
                "type": topic,
                "payload": payload or {},
                "timestamp": int(time.time()),
            }
        )
        dead: list[WebSocket] = []
        for ws in list(self._clients):
            subs = self._clients[ws]
            if "*" in subs or topic in subs:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
        for ws in dead:
            self._clients.pop(ws, None)
            logger.debug("Pruned dead WebSocket client")

    async def publish_progress(self, event: ProgressEvent):
        """Progress sink for AppSession.subscribe()."""
        await self.broadcast(TOPIC_SWITCH_PROGRESS, event.model_dump(mode="json"))

    @property
    def client_count(self) -> int:
        return len(self._clients)
