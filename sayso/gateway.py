# sayso/gateway.py

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from aiohttp import web

from .auth import TokenSigner
from .connection import RealtimeSession
from .presence import PresenceDirectory

logger = logging.getLogger(__name__)


class RealtimeGateway:
    """
    Serves the notification WebSocket, gives each live socket a connection
    handle, and owns the PresenceDirectory that maps users onto those handles.
    """
    HEARTBEAT_SECONDS = 30.0

    def __init__(self, tokens: Optional[TokenSigner] = None, require_token: bool = False):
        if require_token and tokens is None:
            raise ValueError("require_token needs a TokenSigner")
        self.tokens = tokens
        self.require_token = require_token

        self.directory = PresenceDirectory(self)
        self._sessions: Dict[str, RealtimeSession] = {}
        logger.info("RealtimeGateway initialized.")

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self.HEARTBEAT_SECONDS)
        await ws.prepare(request)

        handle = uuid.uuid4().hex
        session = RealtimeSession(self, handle, ws, request.remote)
        self._sessions[handle] = session
        await session.handle_connection()
        return ws

    def connection_closed(self, handle: str) -> None:
        """Called once by a session when its connection terminates."""
        self._sessions.pop(handle, None)
        self.directory.remove_by_connection(handle)

    async def send(self, handle: str, event: str, payload: Dict[str, Any]) -> None:
        session = self._sessions.get(handle)
        if session is None or session.is_closing:
            raise ConnectionError(f"Connection {handle} is gone")
        await session.send_json({"type": event, "payload": payload})

    async def stop(self, app: Optional[web.Application] = None):
        """Closes every live socket and empties the directory. Usable as an on_shutdown hook."""
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(session.close() for session in sessions))
        await self.directory.drain()
        self.directory.clear()
        logger.info("Realtime gateway stopped.")
