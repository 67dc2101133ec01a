import time

import pytest
from aiohttp import WSCloseCode

from sayso.gateway import RealtimeGateway


async def test_register_then_notify_reaches_the_socket(gateway, open_socket):
    sock = await open_socket()
    reply = await sock.register("user42")
    assert reply == {"type": "response",
                     "payload": {"status": "ok", "message": "Registered for notifications."}}
    assert gateway.directory.lookup("user42") is not None

    gateway.directory.notify("user42", {"message": "x"})
    assert await sock.recv() == {"type": "notification", "payload": {"message": "x"}}


async def test_each_socket_gets_its_own_handle(gateway, open_socket):
    first = await open_socket()
    second = await open_socket()
    await first.register("alice")
    await second.register("bob")
    assert gateway.directory.lookup("alice") != gateway.directory.lookup("bob")


async def test_numeric_user_ids_are_stored_as_strings(gateway, open_socket):
    sock = await open_socket()
    await sock.register(42)
    assert gateway.directory.lookup("42") is not None


async def test_disconnect_removes_registration(gateway, open_socket, wait_until):
    sock = await open_socket()
    await sock.register("user42")

    await sock.close()
    await wait_until(lambda: gateway.directory.lookup("user42") is None)


async def test_reconnect_supersedes_and_stale_close_is_harmless(gateway, open_socket, wait_until):
    first = await open_socket()
    await first.register("user42")
    first_handle = gateway.directory.lookup("user42")

    second = await open_socket()
    await second.register("user42")
    second_handle = gateway.directory.lookup("user42")
    assert second_handle != first_handle

    await first.close()
    await wait_until(lambda: first_handle not in gateway._sessions)
    assert gateway.directory.lookup("user42") == second_handle

    gateway.directory.notify("user42", {"message": "still here"})
    assert (await second.recv())["payload"] == {"message": "still here"}


async def test_ping_and_unknown_commands(open_socket):
    sock = await open_socket()
    await sock.send({"type": "ping"})
    assert await sock.recv() == {"type": "pong"}

    await sock.send({"type": "subscribe", "payload": {}})
    reply = await sock.recv()
    assert reply["payload"] == {"status": "error", "message": "Unknown command type: subscribe"}


async def test_binary_frames_get_an_error_reply(open_socket):
    sock = await open_socket()
    await sock.ws.send_bytes(b"\x00\x01")
    reply = await sock.recv()
    assert reply["payload"] == {"status": "error", "message": "Binary frames are not supported."}


@pytest.mark.parametrize("payload", [None, {}, {"userId": ""}, {"userId": None}, "user42"])
async def test_malformed_register_is_refused(gateway, open_socket, payload):
    sock = await open_socket()
    await sock.send({"type": "register", "payload": payload})
    reply = await sock.recv()
    assert reply["payload"] == {"status": "error", "message": "Malformed register envelope."}
    assert len(gateway.directory) == 0


@pytest.mark.parametrize("text", ["this is not json", "[1, 2]"])
async def test_invalid_envelope_closes_connection(gateway, open_socket, wait_until, text):
    sock = await open_socket()
    await sock.register("user42")

    await sock.send_raw(text)
    assert await sock.recv() is None
    assert sock.close_code == WSCloseCode.UNSUPPORTED_DATA
    await wait_until(lambda: gateway.directory.lookup("user42") is None)


async def test_notify_after_client_vanished_is_silent(gateway, open_socket, wait_until):
    sock = await open_socket()
    await sock.register("user42")
    handle = gateway.directory.lookup("user42")
    await sock.close()
    await wait_until(lambda: handle not in gateway._sessions)

    gateway.directory.notify("user42", {"message": "x"})
    await gateway.directory.drain()

    with pytest.raises(ConnectionError):
        await gateway.send(handle, "notification", {"message": "x"})


async def test_stale_entry_delivery_failure_is_swallowed(gateway):
    gateway.directory.register("ghost", "no-such-connection")
    gateway.directory.notify("ghost", {"message": "x"})
    await gateway.directory.drain()
    assert gateway.directory.lookup("ghost") == "no-such-connection"


async def test_stop_closes_sockets_and_clears_directory(gateway, open_socket):
    sock = await open_socket()
    await sock.register("user42")

    await gateway.stop()
    assert gateway.directory.online_user_ids() == []
    assert await sock.recv() is None
    assert sock.ws.closed


class TestTokenRequired:

    @pytest.fixture
    async def secured(self, aiohttp_client, build_app, tokens):
        gw = RealtimeGateway(tokens=tokens, require_token=True)
        http = await aiohttp_client(build_app(gw))
        yield gw, http
        await gw.stop()

    async def test_matching_token_registers(self, secured, tokens, open_socket):
        gw, http = secured
        sock = await open_socket(http)
        reply = await sock.register("user42", token=tokens.issue("user42"))
        assert reply["payload"]["status"] == "ok"
        assert gw.directory.lookup("user42") is not None

    async def test_missing_token_is_refused(self, secured, open_socket):
        gw, http = secured
        sock = await open_socket(http)
        reply = await sock.register("user42")
        assert reply["payload"] == {"status": "error", "message": "Registration refused: Invalid token."}
        assert gw.directory.lookup("user42") is None

    @pytest.mark.parametrize("token", [5, {"sub": "user42"}, ["user42"], True])
    async def test_non_string_token_is_refused_and_socket_stays_open(self, secured, open_socket, token):
        gw, http = secured
        sock = await open_socket(http)
        reply = await sock.register("user42", token=token)
        assert reply["payload"] == {"status": "error", "message": "Registration refused: Invalid token."}
        assert len(gw.directory) == 0

        await sock.send({"type": "ping"})
        assert await sock.recv() == {"type": "pong"}

    async def test_expired_token_is_refused(self, secured, tokens, open_socket):
        gw, http = secured
        sock = await open_socket(http)
        reply = await sock.register("user42", token=tokens.issue("user42", now=time.time() - 7200))
        assert reply["payload"] == {"status": "error", "message": "Registration refused: Token expired."}

    async def test_token_for_other_user_is_refused(self, secured, tokens, open_socket):
        gw, http = secured
        sock = await open_socket(http)
        reply = await sock.register("user42", token=tokens.issue("someone-else"))
        assert reply["payload"] == {
            "status": "error",
            "message": "Registration refused: token does not match user.",
        }
        assert len(gw.directory) == 0

    def test_requires_a_signer(self):
        with pytest.raises(ValueError):
            RealtimeGateway(require_token=True)
