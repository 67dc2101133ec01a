# sayso/connection.py

import json
import logging

from aiohttp import WSCloseCode, WSMsgType, web

from .auth import InvalidToken

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .gateway import RealtimeGateway

logger = logging.getLogger(__name__)


class RealtimeSession:
    """
    One live notification WebSocket. Speaks JSON envelopes of the form
    {"type": ..., "payload": ...}, one per text frame.
    """
    def __init__(self, gateway: 'RealtimeGateway', handle: str,
                 ws: web.WebSocketResponse, addr: str | None):
        self.gateway = gateway
        self.handle = handle
        self.ws = ws
        self.addr = addr

        self.user_id: str | None = None
        self._shutting_down = False
        logger.info(f"RealtimeSession {handle} created for {self.addr!r}")

    @property
    def is_closing(self) -> bool:
        return self.ws.closed

    async def send_json(self, data: dict):
        if self.ws.closed:
            raise ConnectionError(f"Connection {self.handle} is closing")
        await self.ws.send_json(data)

    async def _respond(self, status: str, message: str):
        await self.send_json({"type": "response", "payload": {"status": status, "message": message}})

    async def close(self):
        self._shutting_down = True
        await self.ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def handle_connection(self):
        """Reads envelopes until the client disconnects, then unregisters the connection."""
        try:
            async for msg in self.ws:
                if msg.type == WSMsgType.TEXT:
                    envelope = json.loads(msg.data)
                    if not isinstance(envelope, dict):
                        raise ValueError("Envelope must be a JSON object")
                    await self._process_message(envelope)
                elif msg.type == WSMsgType.BINARY:
                    await self._respond("error", "Binary frames are not supported.")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Connection {self.handle} failed: {self.ws.exception()}")
                    break

        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid message format from {self.addr!r}: {e}")
            await self.ws.close(code=WSCloseCode.UNSUPPORTED_DATA, message=b"Invalid JSON envelope")
        except ConnectionError as e:
            logger.info(f"Connection {self.handle} dropped: {e}")
        except Exception:
            logger.exception(f"An unexpected error occurred with client {self.addr!r}")
        finally:
            self.gateway.connection_closed(self.handle)
            if not self._shutting_down:
                await self.ws.close()
            logger.info(f"Connection to {self.addr!r} closed.")

    async def _process_message(self, envelope: dict):
        msg_type = envelope.get("type")

        if msg_type == "register":
            await self._perform_register(envelope)
        elif msg_type == "ping":
            await self.send_json({"type": "pong"})
        else:
            await self._respond("error", f"Unknown command type: {msg_type}")

    async def _perform_register(self, envelope: dict):
        try:
            payload = envelope["payload"]
            user_id = payload["userId"]
            token = payload.get("token")
        except (KeyError, TypeError, AttributeError):
            await self._respond("error", "Malformed register envelope.")
            return

        if user_id is None or isinstance(user_id, (dict, list, bool)) or str(user_id) == "":
            await self._respond("error", "Malformed register envelope.")
            return
        user_id = str(user_id)

        if self.gateway.require_token:
            try:
                claims = self.gateway.tokens.verify(token)
            except InvalidToken as e:
                await self._respond("error", f"Registration refused: {e}.")
                return
            if claims["sub"] != user_id:
                await self._respond("error", "Registration refused: token does not match user.")
                return

        self.user_id = user_id
        self.gateway.directory.register(user_id, self.handle)
        await self._respond("ok", "Registered for notifications.")
