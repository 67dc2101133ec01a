import asyncio
import json

import aiohttp
import pytest

from sayso.api import create_app
from sayso.auth import Authenticator, TokenSigner
from sayso.db_async import Database
from sayso.gateway import RealtimeGateway
from sayso.media import MediaStore
from sayso.presence import PresenceDirectory
from sayso.router import NotificationRouter


class RecordingTransport:
    """Stands in for the gateway; remembers every send."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, handle, event, payload):
        if self.fail:
            raise ConnectionError("connection went away")
        self.sent.append((handle, event, payload))


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def directory(transport):
    return PresenceDirectory(transport)


@pytest.fixture
def token_secret():
    return "test-secret-for-signing-bearer-tokens"


@pytest.fixture
def tokens(token_secret):
    return TokenSigner(token_secret, ttl_seconds=3600)


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "sayso-test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def media(tmp_path):
    return MediaStore(tmp_path / "media", "/media")


@pytest.fixture
async def gateway(tokens):
    gw = RealtimeGateway(tokens=tokens)
    yield gw
    await gw.stop()


@pytest.fixture
def build_app(db, tokens, media):
    """Factory fixture: the HTTP application around a given gateway."""
    def _build(gateway, **kwargs):
        return create_app(
            db, Authenticator(db), tokens, NotificationRouter(gateway.directory),
            gateway, media, **kwargs,
        )
    return _build


@pytest.fixture
async def client(aiohttp_client, build_app, gateway):
    return await aiohttp_client(build_app(gateway))


class SocketClient:
    """Minimal JSON-envelope client for the /ws notification endpoint."""

    def __init__(self, ws):
        self.ws = ws

    @classmethod
    async def connect(cls, http, url="/ws"):
        """`http` is a pytest-aiohttp test client or an aiohttp.ClientSession."""
        return cls(await http.ws_connect(url))

    async def send(self, envelope):
        await self.ws.send_json(envelope)

    async def send_raw(self, text: str):
        await self.ws.send_str(text)

    async def recv(self, timeout=2.0):
        """Next envelope, or None once the server has closed the socket."""
        msg = await self.ws.receive(timeout)
        if msg.type == aiohttp.WSMsgType.TEXT:
            return json.loads(msg.data)
        return None

    async def register(self, user_id, token=None):
        payload = {"userId": user_id}
        if token is not None:
            payload["token"] = token
        await self.send({"type": "register", "payload": payload})
        return await self.recv()

    @property
    def close_code(self):
        return self.ws.close_code

    async def close(self):
        await self.ws.close()


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def open_socket(client):
    """Factory fixture: opens /ws connections and closes them afterwards."""
    opened = []

    async def _open(http=None):
        sock = await SocketClient.connect(http or client)
        opened.append(sock)
        return sock

    yield _open
    for sock in opened:
        await sock.close()


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until


@pytest.fixture
def socket_client():
    return SocketClient
