import asyncio
import json

import pytest
import pytest_asyncio
import websockets
from websockets.asyncio.client import connect

from tokenrelay.server.runtime import ServerRuntime


@pytest_asyncio.fixture
async def runtime():
    rt = ServerRuntime({"listen": "127.0.0.1:0"})
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


def _url(rt, query=""):
    return f"ws://127.0.0.1:{rt.bound_port}/{query}"


async def _recv(ws, type_=None):
    while True:
        frame = json.loads(await asyncio.wait_for(ws.recv(), 2))
        if type_ is None or frame["type"] == type_:
            return frame


async def _http_get(port, path):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 2)
    lines = head.decode().split("\r\n")
    status = int(lines[0].split()[1])
    headers = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    body = await asyncio.wait_for(reader.readexactly(int(headers.get("content-length", "0"))), 2)
    writer.close()
    return status, headers, body


@pytest.mark.asyncio
async def test_direct_message_between_two_clients(runtime):
    async with connect(_url(runtime)) as a, connect(_url(runtime)) as b:
        token_a = (await _recv(a, "connection_established"))["token"]
        token_b = (await _recv(b, "connection_established"))["token"]

        await a.send(json.dumps({"to": token_b, "message": "hola"}))

        got = await _recv(b, "message")
        assert got["from"] == token_a
        assert got["message"] == "hola"
        ack = await _recv(a, "message_sent")
        assert (ack["sent"], ack["total"]) == (1, 1)


@pytest.mark.asyncio
async def test_peer_close_notifies_partner(runtime):
    async with connect(_url(runtime)) as b:
        token_b = (await _recv(b, "connection_established"))["token"]
        async with connect(_url(runtime)) as a:
            token_a = (await _recv(a, "connection_established"))["token"]
            await a.send(json.dumps({"to": token_b, "message": "bye soon"}))
            await _recv(a, "message_sent")

        note = await _recv(b, "disconnected")
        assert note["token"] == token_a


@pytest.mark.asyncio
async def test_malformed_frame_keeps_connection_open(runtime):
    async with connect(_url(runtime)) as a:
        await _recv(a, "connection_established")
        await a.send("not json")
        assert (await _recv(a))["type"] == "error"

        await a.send(json.dumps({"type": "list_public_hosts"}))
        assert (await _recv(a))["type"] == "public_hosts_list"


@pytest.mark.asyncio
async def test_reconnect_with_released_token(runtime):
    async with connect(_url(runtime)) as a:
        token = (await _recv(a, "connection_established"))["token"]

    for _ in range(100):
        if runtime.relay.sessions.get(token) is None:
            break
        await asyncio.sleep(0.01)

    async with connect(_url(runtime, f"?token={token}")) as again:
        hello = await _recv(again, "connection_established")
        assert hello["token"] == token
        assert hello["reconnected"] is True


@pytest.mark.asyncio
async def test_unknown_token_is_closed_without_frame(runtime):
    async with connect(_url(runtime, "?token=QQQQ")) as ws:
        with pytest.raises(websockets.ConnectionClosed) as closed:
            await asyncio.wait_for(ws.recv(), 2)
        assert closed.value.rcvd is not None
        assert closed.value.rcvd.code == 1008


@pytest.mark.asyncio
async def test_health_and_status_endpoints(runtime):
    status, _, body = await _http_get(runtime.bound_port, "/health")
    assert status == 200
    assert body == b"OK\n"

    status, headers, body = await _http_get(runtime.bound_port, "/status")
    assert status == 200
    assert headers["content-type"] == "application/json"
    snapshot = json.loads(body)
    assert snapshot["activeConnections"] == 0
    assert snapshot["tokens"]["currentTokenLength"] == 4


@pytest.mark.asyncio
async def test_plain_http_elsewhere_is_not_found(runtime):
    status, _, _ = await _http_get(runtime.bound_port, "/")
    assert status == 404


def test_requested_token_parsing():
    assert ServerRuntime._requested_token("/?token=AB12") == "AB12"
    assert ServerRuntime._requested_token("/?shortToken=AB12") == "AB12"
    assert ServerRuntime._requested_token("/?token=") is None
    assert ServerRuntime._requested_token("/") is None


@pytest.mark.asyncio
async def test_large_frame_is_relayed(runtime):
    body = "x" * (256 * 1024)
    async with connect(_url(runtime), max_size=None) as a, connect(_url(runtime), max_size=None) as b:
        await _recv(a, "connection_established")
        token_b = (await _recv(b, "connection_established"))["token"]

        await a.send(json.dumps({"to": token_b, "message": body}))

        got = await _recv(b, "message")
        assert len(got["message"]) == len(body)
        assert (await _recv(a, "message_sent"))["sent"] == 1
