import asyncio
import json
from http import HTTPStatus
from types import SimpleNamespace

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from haplink.database import AccessoryDatabase, CharacteristicValueChanged, EventEmitter, Perm
from haplink.handlers import HandlerContext, Request, TlvHandler
from haplink.server import Api, Server, parse_request
from haplink.storage import FileStorage
from haplink.tlv import TlvType, Value, decode, encode_values


class FakeWriter:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data += data

    async def drain(self):
        return None

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None


class FakeCharacteristic:
    def __init__(self, iid, perms):
        self.id = iid
        self.hap_type = "25"
        self.format = "bool"
        self.perms = perms
        self.unit = None
        self.max_value = None
        self.min_value = None
        self.step_value = None
        self.max_len = None
        self.event_notifications = None
        self.value = False

    async def get_value(self):
        return self.value

    async def set_value(self, value):
        self.value = value


class FakeService:
    def __init__(self, characteristics):
        self.characteristics = characteristics

    def get_characteristic(self, hap_type):
        return next((c for c in self.characteristics if c.hap_type == hap_type), None)


class FakeAccessory:
    def __init__(self, aid, services):
        self.id = aid
        self.services = services
        self.emitter = None

    def set_event_emitter(self, emitter):
        self.emitter = emitter

    def get_service(self, hap_type):
        return None

    def to_dict(self):
        return {"aid": self.id, "services": []}


class EchoSetup(TlvHandler):
    def parse(self, body):
        return body

    async def handle(self, step, context):
        return [Value.state(2)]


async def _wait_for(condition):
    for _ in range(300):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


def _context(tmp_path, **kwargs):
    emitter = EventEmitter()
    return HandlerContext(
        storage=FileStorage(tmp_path),
        accessory_database=AccessoryDatabase(emitter),
        event_emitter=emitter,
        **kwargs,
    )


def test_parse_request_with_query():
    parsed = parse_request(b"GET /characteristics?id=1.2&ev=1 HTTP/1.1\r\nHost: x\r\n\r\nrest")
    request, keep_alive, rest = parsed
    assert request.method == "GET"
    assert request.path == "/characteristics"
    assert request.query == "id=1.2&ev=1"
    assert request.body == b""
    assert keep_alive is True
    assert rest == b"rest"


def test_parse_request_without_query_has_none():
    request, _, _ = parse_request(b"GET /accessories HTTP/1.1\r\n\r\n")
    assert request.query is None


def test_parse_request_body_and_remainder():
    data = b"PUT /characteristics HTTP/1.1\r\nContent-Length: 4\r\n\r\nabcdGET"
    request, _, rest = parse_request(data)
    assert request.body == b"abcd"
    assert rest == b"GET"


def test_parse_request_incomplete_returns_none():
    assert parse_request(b"GET /accessories HTTP/1.1\r\n") is None
    assert parse_request(b"PUT /x HTTP/1.1\r\nContent-Length: 10\r\n\r\nab") is None


def test_parse_request_connection_handling():
    _, close_keep, _ = parse_request(b"GET / HTTP/1.1\r\nConnection: close\r\n\r\n")
    _, old_keep, _ = parse_request(b"GET / HTTP/1.0\r\n\r\n")
    assert close_keep is False
    assert old_keep is False


@pytest.mark.parametrize(
    "data",
    [
        b"GARBAGE\r\n\r\n",
        b"GET /x HTTP/1.1\r\nNoColon\r\n\r\n",
        b"GET /x HTTP/1.1\r\nContent-Length: abc\r\n\r\n",
        b"GET x HTTP/1.1\r\n\r\n",
    ],
)
def test_parse_request_malformed(data):
    with pytest.raises(ValueError):
        parse_request(data)


@pytest.mark.asyncio
async def test_dispatch_unknown_route_is_404(tmp_path):
    api = Api(_context(tmp_path))
    response = await api.dispatch(Request("GET", "/nowhere"))
    assert response.status == HTTPStatus.NOT_FOUND
    assert response.body == b""


@pytest.mark.asyncio
async def test_dispatch_pair_setup_needs_handler(tmp_path):
    context = _context(tmp_path)
    without = await Api(context).dispatch(Request("POST", "/pair-setup"))
    with_setup = await Api(context, pair_setup=EchoSetup()).dispatch(Request("POST", "/pair-setup"))
    assert without.status == HTTPStatus.NOT_FOUND
    assert with_setup.status == HTTPStatus.OK
    assert with_setup.body == b"\x06\x01\x02"


@pytest.mark.asyncio
async def test_dispatch_accessories(tmp_path):
    api = Api(_context(tmp_path))
    response = await api.dispatch(Request("GET", "/accessories"))
    assert response.status == HTTPStatus.OK
    assert json.loads(response.body) == {"accessories": []}
    assert response.headers["Content-Type"] == "application/hap+json"


@pytest.mark.asyncio
async def test_dispatch_pair_verify_start(tmp_path):
    config = SimpleNamespace(
        device_id="11:22:33:44:55:66", device_ed25519_keypair=Ed25519PrivateKey.generate()
    )
    api = Api(_context(tmp_path, config=config))
    a_pub = X25519PrivateKey.generate().public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    body = encode_values([Value.state(1), Value.public_key(a_pub)])
    response = await api.dispatch(Request("POST", "/pair-verify", body=body))
    decoded = decode(response.body)
    assert response.headers["Content-Type"] == "application/pairing+tlv8"
    assert decoded[TlvType.STATE] == b"\x02"
    assert len(decoded[TlvType.PUBLIC_KEY]) == 32


@pytest.mark.asyncio
async def test_handle_connection_serves_request(tmp_path):
    emitter = EventEmitter()
    server = Server(SimpleNamespace(), FileStorage(tmp_path), AccessoryDatabase(emitter), emitter)
    reader = asyncio.StreamReader()
    reader.feed_data(b"GET /accessories HTTP/1.1\r\n\r\n")
    reader.feed_eof()
    writer = FakeWriter()
    await server.handle_connection(reader, writer)
    head, _, body = bytes(writer.data).partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Type: application/hap+json" in head
    assert json.loads(body) == {"accessories": []}
    assert writer.closed


@pytest.mark.asyncio
async def test_handle_connection_close_header_stops(tmp_path):
    emitter = EventEmitter()
    server = Server(SimpleNamespace(), FileStorage(tmp_path), AccessoryDatabase(emitter), emitter)
    reader = asyncio.StreamReader()
    reader.feed_data(
        b"GET /nowhere HTTP/1.1\r\nConnection: close\r\n\r\nGET /nowhere HTTP/1.1\r\n\r\n"
    )
    writer = FakeWriter()
    await asyncio.wait_for(server.handle_connection(reader, writer), 2)
    assert bytes(writer.data).count(b"HTTP/1.1 404 Not Found") == 1
    assert writer.closed


@pytest.mark.asyncio
async def test_handle_connection_malformed_gets_400(tmp_path):
    emitter = EventEmitter()
    server = Server(SimpleNamespace(), FileStorage(tmp_path), AccessoryDatabase(emitter), emitter)
    reader = asyncio.StreamReader()
    reader.feed_data(b"NONSENSE\r\n\r\n")
    writer = FakeWriter()
    await asyncio.wait_for(server.handle_connection(reader, writer), 2)
    assert bytes(writer.data).startswith(b"HTTP/1.1 400 Bad Request\r\n")


@pytest.mark.asyncio
async def test_events_reach_subscribed_connection(tmp_path):
    emitter = EventEmitter()
    database = AccessoryDatabase(emitter)
    characteristic = FakeCharacteristic(2, [Perm.PAIRED_READ, Perm.EVENTS])
    database.add_accessory(FakeAccessory(1, [FakeService([characteristic])]))
    server = Server(SimpleNamespace(), FileStorage(tmp_path), database, emitter)

    body = json.dumps({"characteristics": [{"aid": 1, "iid": 2, "ev": True}]}).encode()
    reader = asyncio.StreamReader()
    reader.feed_data(
        b"PUT /characteristics HTTP/1.1\r\nContent-Length: "
        + str(len(body)).encode()
        + b"\r\n\r\n"
        + body
    )
    writer = FakeWriter()
    task = asyncio.create_task(server.handle_connection(reader, writer))
    await _wait_for(lambda: b"204 No Content" in writer.data)
    assert characteristic.event_notifications is True

    await emitter.emit(CharacteristicValueChanged(aid=1, iid=2, value=True))
    assert b"EVENT/1.0 200 OK" in writer.data
    event_body = bytes(writer.data).split(b"\n\n")[-1]
    assert json.loads(event_body) == {"characteristics": [{"iid": 2, "aid": 1, "value": True}]}

    reader.feed_eof()
    await asyncio.wait_for(task, 2)
    writer.data.clear()
    await emitter.emit(CharacteristicValueChanged(aid=1, iid=2, value=False))
    assert writer.data == bytearray()


@pytest.mark.asyncio
async def test_run_serves_over_tcp(tmp_path):
    emitter = EventEmitter()
    announced = []

    async def announce():
        announced.append(True)

    config = SimpleNamespace(host="127.0.0.1", port=0)
    server = Server(config, FileStorage(tmp_path), AccessoryDatabase(emitter), emitter, announce=announce)
    task = asyncio.create_task(server.run())
    try:
        await asyncio.wait_for(server.listening.wait(), 5)
        host, port = server.addresses[0][:2]
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"GET /nowhere HTTP/1.1\r\nConnection: close\r\n\r\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()
        assert data.startswith(b"HTTP/1.1 404 Not Found\r\n")
        assert announced == [True]
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task