#!/usr/bin/env python3
"""
WebSocket connection manager - the realtime transport of the web process.

Sockets live on the server's event loop, while broadcasts arrive from sync
route handlers (threadpool) and the scheduler's drain thread. Sends are
handed to the loop with run_coroutine_threadsafe and the caller waits a
bounded time for the count of connections written.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional, Set

from fastapi import WebSocket

from notification.interfaces import Presence, RealtimeTransport

logger = logging.getLogger(__name__)


class WebSocketConnectionManager(RealtimeTransport):
    """Manage active websocket connections grouped by user."""

    def __init__(self, send_timeout_seconds: float = 5.0) -> None:
        self._connections: DefaultDict[str, Set[WebSocket]] = defaultdict(set)
        self._handles: Dict[int, str] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.instance_id = uuid.uuid4().hex[:8]
        self.send_timeout_seconds = send_timeout_seconds

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def handle_for(self, websocket: WebSocket) -> str:
        return self._handles.get(id(websocket)) or f"{self.instance_id}:{id(websocket)}"

    async def connect(self, user_id: str, websocket: WebSocket) -> str:
        """Accept the websocket connection and register it for ``user_id``."""
        await websocket.accept()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        handle = f"{self.instance_id}:{id(websocket)}"
        self._connections[user_id].add(websocket)
        self._handles[id(websocket)] = handle
        logger.debug(f"User {user_id} connected ({handle})")
        return handle

    def disconnect(self, user_id: str, websocket: WebSocket) -> Optional[str]:
        """Remove ``websocket`` from the pool for ``user_id``. Returns its handle."""
        handle = self._handles.pop(id(websocket), None)
        connections = self._connections.get(user_id)
        if connections is None:
            return handle
        connections.discard(websocket)
        if not connections:
            self._connections.pop(user_id, None)
        return handle

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, ()))
        return sum(len(c) for c in self._connections.values())

    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> int:
        """Send ``message`` to every active connection for ``user_id``."""
        written = 0
        for connection in list(self._connections.get(user_id, set())):
            try:
                await connection.send_json(message)
                written += 1
            except Exception as e:
                logger.info(f"Dropping dead connection for {user_id}: {e}")
                self.disconnect(user_id, connection)
        return written

    def broadcast_to_user(self, user_id: str, event_name: str, payload: Dict[str, Any]) -> int:
        if not self._connections.get(user_id) or self._loop is None:
            return 0

        message = {'event': event_name, 'data': payload}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            # Already on the loop: cannot block on our own future
            self._loop.create_task(self.send_to_user(user_id, message))
            return self.connection_count(user_id)

        future = asyncio.run_coroutine_threadsafe(self.send_to_user(user_id, message), self._loop)
        return future.result(timeout=self.send_timeout_seconds)

    def presence_of(self, user_id: str) -> Presence:
        handles: List[str] = sorted(self.handle_for(ws) for ws in self._connections.get(user_id, set()))
        return Presence(online=bool(handles), handles=handles)
