"""The HTTP accessory server: request framing, routing and event delivery."""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Optional, Union

from haplink.database import AccessoryDatabase, CharacteristicValueChanged, Event, EventEmitter
from haplink.handlers import (
    Accessories,
    GetCharacteristics,
    HandlerContext,
    Identify,
    JsonHandler,
    Request,
    TlvHandler,
    UpdateCharacteristics,
)
from haplink.pair_verify import PairVerify
from haplink.pairings import Pairings
from haplink.responses import EventObject, Response, event_response, status_response
from haplink.session import EncryptedConnection
from haplink.storage import Storage

_log = logging.getLogger(__name__)

_HEADER_END = b"\r\n\r\n"
_READ_SIZE = 65536
_MAX_HEAD = 65536

Handler = Union[TlvHandler, JsonHandler]


def parse_request(data: bytes) -> Optional[tuple[Request, bool, bytes]]:
    """Parse one HTTP/1.x request from the start of ``data``.

    Returns ``(request, keep_alive, remaining bytes)``, or ``None`` if the request is not
    complete yet. Raises ``ValueError`` if the request is malformed.
    """
    data = bytes(data)
    end = data.find(_HEADER_END)
    if end < 0:
        if len(data) > _MAX_HEAD:
            raise ValueError("request head too large")
        return None

    lines = data[:end].decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ValueError(f"malformed request line {lines[0]!r}")
    method, target, version = parts
    if not method or not target.startswith("/"):
        raise ValueError(f"malformed request line {lines[0]!r}")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"malformed header line {line!r}")
        headers[name.strip().lower()] = value.strip()

    if "transfer-encoding" in headers:
        raise ValueError("transfer encodings are not supported")
    raw_length = headers.get("content-length", "0")
    if not raw_length.isdigit():
        raise ValueError(f"invalid content length {raw_length!r}")
    length = int(raw_length)

    body_start = end + len(_HEADER_END)
    body_end = body_start + length
    if len(data) < body_end:
        return None

    path, question, query = target.partition("?")
    connection = headers.get("connection", "").lower()
    if version == "HTTP/1.0":
        keep_alive = "keep-alive" in connection
    else:
        keep_alive = "close" not in connection

    request = Request(method, path, query if question else None, data[body_start:body_end])
    return request, keep_alive, data[body_end:]


def _render(response: Response) -> bytes:
    status = HTTPStatus(response.status)
    headers = dict(response.headers)
    if not any(name.lower() == "content-length" for name in headers):
        headers["Content-Length"] = str(len(response.body))
    head = f"HTTP/1.1 {status.value} {status.phrase}\r\n"
    head += "".join(f"{name}: {value}\r\n" for name, value in headers.items())
    return (head + "\r\n").encode("latin-1") + bytes(response.body)


class Api:
    """Routes requests of one connection to that connection's handlers."""

    def __init__(self, context: HandlerContext, pair_setup: Optional[TlvHandler] = None) -> None:
        self.context = context
        routes: dict[tuple[str, str], Handler] = {
            ("POST", "/pair-verify"): PairVerify(),
            ("GET", "/accessories"): Accessories(),
            ("GET", "/characteristics"): GetCharacteristics(),
            ("PUT", "/characteristics"): UpdateCharacteristics(),
            ("POST", "/pairings"): Pairings(),
            ("POST", "/identify"): Identify(),
        }
        if pair_setup is not None:
            routes[("POST", "/pair-setup")] = pair_setup
        self._routes = routes

    async def dispatch(self, request: Request) -> Response:
        """Answer a request; unknown routes get 404."""
        handler = self._routes.get((request.method, request.path))
        if handler is None:
            return status_response(HTTPStatus.NOT_FOUND)
        return await handler.respond(request, self.context)


class Server:
    """Accepts controller connections and serves the accessory API on each."""

    def __init__(
        self,
        config: Any,
        storage: Storage,
        accessory_database: AccessoryDatabase,
        event_emitter: EventEmitter,
        pair_setup_factory: Optional[Callable[[], TlvHandler]] = None,
        announce: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.accessory_database = accessory_database
        self.event_emitter = event_emitter
        self._pair_setup_factory = pair_setup_factory
        self._announce = announce
        self.addresses: list[Any] = []
        self.listening = asyncio.Event()

    async def run(self) -> None:
        """Bind to the configured host and port and serve until cancelled."""
        server = await asyncio.start_server(
            self.handle_connection, str(self.config.host), self.config.port
        )
        self.addresses = [sock.getsockname() for sock in server.sockets]
        _log.info("listening on %s", self.addresses)
        if self._announce is not None:
            await self._announce()
        self.listening.set()
        try:
            async with server:
                await server.serve_forever()
        finally:
            self.listening.clear()

    async def handle_connection(self, reader: asyncio.StreamReader, writer: Any) -> None:
        """Serve requests arriving on one connection until it ends."""
        connection = EncryptedConnection(reader, writer)
        context = HandlerContext(
            storage=self.storage,
            accessory_database=self.accessory_database,
            event_emitter=self.event_emitter,
            config=self.config,
            event_subscriptions=[],
            connection=connection,
        )
        pair_setup = self._pair_setup_factory() if self._pair_setup_factory else None
        api = Api(context, pair_setup)
        write_lock = asyncio.Lock()

        async def send(data: bytes) -> None:
            async with write_lock:
                await connection.write(data)

        async def on_event(event: Event) -> None:
            if not isinstance(event, CharacteristicValueChanged):
                return
            subscription = (event.aid, event.iid)
            subscriptions = context.event_subscriptions
            if subscription not in subscriptions:
                return
            message = event_response([EventObject(iid=event.iid, aid=event.aid, value=event.value)])
            try:
                await send(message)
            except (ConnectionError, OSError, RuntimeError):
                if subscription in subscriptions:
                    subscriptions.remove(subscription)

        self.event_emitter.add_listener(on_event)

        buffer = b""
        try:
            while True:
                try:
                    parsed = parse_request(buffer)
                except ValueError as exc:
                    _log.warning("malformed request: %s", exc)
                    await send(_render(status_response(HTTPStatus.BAD_REQUEST)))
                    break
                if parsed is None:
                    data = await connection.read(_READ_SIZE)
                    if not data:
                        break
                    buffer += data
                    continue
                request, keep_alive, buffer = parsed
                if connection.controller_id is not None:
                    context.controller_id = connection.controller_id
                try:
                    response = await api.dispatch(request)
                except Exception:
                    _log.exception("error handling %s %s", request.method, request.path)
                    break
                await send(_render(response))
                if not keep_alive:
                    break
        except (ConnectionError, OSError) as exc:
            _log.error("connection error: %r", exc)
        finally:
            context.event_subscriptions.clear()
            try:
                await connection.close()
            except (ConnectionError, OSError):
                pass