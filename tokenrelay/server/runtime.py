from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Any, Dict, Optional, Set, Tuple, Union
from urllib.parse import parse_qs, urlsplit

import orjson
import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.http11 import Request, Response
from websockets.protocol import State

from tokenrelay.core.cleaner import Cleaner
from tokenrelay.core.proto import encode_frame
from tokenrelay.core.relay import Relay
from tokenrelay.core.settings import RelaySettings

log = logging.getLogger("tokenrelay.server.runtime")

# close code for a token that may not be used from this address
POLICY_VIOLATION = 1008


class Connection:
    """One peer's websocket, exposed to the relay as a fire-and-forget link.

    Frames are queued and written by a dedicated task so relay code never
    awaits a slow or dead peer.
    """

    def __init__(self, websocket: ServerConnection) -> None:
        self.websocket = websocket
        self._outbox: "asyncio.Queue[Union[str, Tuple[int, str]]]" = asyncio.Queue()
        self._closing = False
        self._writer = asyncio.create_task(self._drain(), name="tokenrelay-writer")

    @property
    def is_open(self) -> bool:
        return not self._closing and self.websocket.state is State.OPEN

    def deliver(self, frame: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        self._outbox.put_nowait(encode_frame(frame))
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait((code, reason))

    def detach(self) -> None:
        self._closing = True
        self._writer.cancel()

    async def _drain(self) -> None:
        while True:
            item = await self._outbox.get()
            if isinstance(item, tuple):
                code, reason = item
                await self.websocket.close(code, reason)
                return
            try:
                await self.websocket.send(item)
            except websockets.ConnectionClosed:
                self._closing = True
                return


class ServerRuntime:
    """WebSocket front end for a single Relay plus its cleaner task."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, relay: Optional[Relay] = None) -> None:
        self.cfg = config or {}
        self.settings = relay.settings if relay is not None else RelaySettings.from_mapping(self.cfg)
        self.listen_host, self.listen_port = self.settings.listen_address
        self.relay = relay or Relay(self.settings)
        self.cleaner = Cleaner(self.relay, interval_s=self.settings.sweep_interval_secs)

        self._ws_server: Optional[Server] = None
        self._connections: Set[Connection] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self._process_request,
            max_size=self.settings.max_message_bytes,
        )
        self.cleaner.start()
        log.info("tokenrelay listening on ws://%s:%d", self.listen_host, self.bound_port)

    async def stop(self) -> None:
        await self.cleaner.stop()
        closed = self.relay.close_all()
        if closed:
            log.info("Closing %d active connection(s)", closed)
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        for conn in list(self._connections):
            conn.detach()
        self._connections.clear()

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        address = self._client_address(websocket)
        requested = self._requested_token(websocket.request.path if websocket.request else "")

        conn = Connection(websocket)
        session = self.relay.connect(conn, address, requested)
        if session is None:
            conn.detach()
            await websocket.close(POLICY_VIOLATION, "token rejected")
            return

        self._connections.add(conn)
        try:
            async for raw in websocket:
                self.relay.handle_frame(session, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.relay.disconnect(session.token, link=conn)
            self._connections.discard(conn)
            conn.detach()

    def _client_address(self, websocket: ServerConnection) -> str:
        if self.settings.trust_forwarded_for and websocket.request is not None:
            forwarded = websocket.request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return str(peer[0])
        return str(peer or "0.0.0.0")

    @staticmethod
    def _requested_token(path: str) -> Optional[str]:
        query = parse_qs(urlsplit(path).query)
        for key in ("token", "shortToken"):
            values = query.get(key)
            if values and values[0].strip():
                return values[0].strip()
        return None

    # ------------------------------------------------------------------
    # Plain HTTP
    # ------------------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = urlsplit(request.path).path
        if path == "/health":
            return connection.respond(HTTPStatus.OK, "OK\n")
        if path == "/status":
            return self._json_response(self.relay.snapshot())
        if request.headers.get("Upgrade", "").lower() != "websocket":
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    @staticmethod
    def _json_response(payload: Dict[str, Any]) -> Response:
        body = orjson.dumps(payload)
        headers = Headers(
            [
                ("Content-Type", "application/json"),
                ("Content-Length", str(len(body))),
                ("Connection", "close"),
            ]
        )
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, body)


__all__ = ["Connection", "ServerRuntime"]
