import asyncio
import uuid

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from haplink.session import (
    EncryptedConnection,
    Session,
    SessionCipher,
    compute_read_key,
    compute_write_key,
    decrypt_chunk,
    encrypt_chunk,
)

SECRET = bytes(range(32))
CONTROLLER = uuid.UUID("00000000-0000-4000-8000-000000000001")


def _nonce(count):
    return bytes(4) + count.to_bytes(8, "little")


def controller_frame(data, count, secret=SECRET):
    """Build a frame as a controller would send it."""
    aad = len(data).to_bytes(2, "little")
    return aad + ChaCha20Poly1305(compute_read_key(secret)).encrypt(_nonce(count), data, aad)


def controller_open(frame, count, secret=SECRET):
    length = int.from_bytes(frame[:2], "little")
    return ChaCha20Poly1305(compute_write_key(secret)).decrypt(
        _nonce(count), frame[2:2 + length + 16], frame[:2]
    )


def split_frames(stream):
    frames = []
    while stream:
        length = int.from_bytes(stream[:2], "little")
        frames.append(stream[:2 + length + 16])
        stream = stream[2 + length + 16:]
    return frames


class FakeWriter:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def test_keys_are_distinct_and_32_bytes():
    read_key = compute_read_key(SECRET)
    write_key = compute_write_key(SECRET)
    assert len(read_key) == 32
    assert len(write_key) == 32
    assert read_key != write_key
    assert compute_read_key(SECRET) == read_key


def test_encrypt_chunk_layout_and_round_trip():
    aad, ciphertext, tag = encrypt_chunk(SECRET, b"hello", 0)
    assert aad == b"\x05\x00"
    assert len(ciphertext) == 5
    assert len(tag) == 16
    assert controller_open(aad + ciphertext + tag, 0) == b"hello"


def test_decrypt_chunk_of_controller_frame():
    frame = controller_frame(b"GET /accessories", 3)
    assert decrypt_chunk(SECRET, frame[:2], frame[2:-16], frame[-16:], 3) == b"GET /accessories"


def test_decrypt_chunk_wrong_count_fails():
    frame = controller_frame(b"data", 0)
    with pytest.raises(InvalidTag):
        decrypt_chunk(SECRET, frame[:2], frame[2:-16], frame[-16:], 1)


def test_own_chunks_do_not_decrypt_with_read_key():
    aad, ciphertext, tag = encrypt_chunk(SECRET, b"data", 0)
    with pytest.raises(InvalidTag):
        decrypt_chunk(SECRET, aad, ciphertext, tag, 0)


def test_session_rejects_short_secret():
    with pytest.raises(ValueError):
        Session(CONTROLLER, b"short")


def test_cipher_splits_into_1024_byte_chunks():
    cipher = SessionCipher(SECRET)
    payload = bytes(i % 251 for i in range(2500))
    frames = split_frames(cipher.encrypt(payload))
    assert [len(f) - 18 for f in frames] == [1024, 1024, 452]
    assert b"".join(controller_open(f, i) for i, f in enumerate(frames)) == payload
    assert cipher.encrypt_count == 3


def test_cipher_exactly_1024_is_one_frame():
    cipher = SessionCipher(SECRET)
    frames = split_frames(cipher.encrypt(bytes(1024)))
    assert len(frames) == 1
    assert cipher.encrypt_count == 1


def test_cipher_empty_data_still_sends_frame():
    cipher = SessionCipher(SECRET)
    out = cipher.encrypt(b"")
    assert len(out) == 18
    assert controller_open(out, 0) == b""


def test_feed_reassembles_partial_frames():
    cipher = SessionCipher(SECRET)
    stream = controller_frame(b"first", 0) + controller_frame(b"second", 1)
    plain = b"".join(cipher.feed(stream[i:i + 1]) for i in range(len(stream)))
    assert plain == b"firstsecond"
    assert cipher.decrypt_count == 2


def test_feed_holds_incomplete_frame():
    cipher = SessionCipher(SECRET)
    frame = controller_frame(b"payload", 0)
    assert cipher.feed(frame[:-1]) == b""
    assert cipher.feed(frame[-1:]) == b"payload"


def test_feed_tampered_frame_raises():
    cipher = SessionCipher(SECRET)
    frame = bytearray(controller_frame(b"payload", 0))
    frame[3] ^= 0xFF
    with pytest.raises(InvalidTag):
        cipher.feed(bytes(frame))


@pytest.mark.asyncio
async def test_connection_passes_plain_data_before_activation():
    reader = asyncio.StreamReader()
    reader.feed_data(b"plain request")
    reader.feed_eof()
    writer = FakeWriter()
    conn = EncryptedConnection(reader, writer)
    assert await conn.read(100) == b"plain request"
    assert await conn.write(b"plain response") == 14
    assert bytes(writer.data) == b"plain response"
    assert conn.controller_id is None


@pytest.mark.asyncio
async def test_activation_takes_effect_at_next_read():
    reader = asyncio.StreamReader()
    reader.feed_data(controller_frame(b"encrypted request", 0))
    reader.feed_eof()
    writer = FakeWriter()
    conn = EncryptedConnection(reader, writer)
    conn.activate(Session(CONTROLLER, SECRET))
    await conn.write(b"M4")
    assert bytes(writer.data) == b"M4"
    assert await conn.read(100) == b"encrypted request"
    assert conn.controller_id == CONTROLLER
    writer.data.clear()
    await conn.write(b"encrypted response")
    assert controller_open(bytes(writer.data), 0) == b"encrypted response"


@pytest.mark.asyncio
async def test_encrypted_read_respects_size_and_eof():
    reader = asyncio.StreamReader()
    reader.feed_data(controller_frame(b"abcdef", 0))
    reader.feed_eof()
    conn = EncryptedConnection(reader, FakeWriter())
    conn.activate(Session(CONTROLLER, SECRET))
    assert await conn.read(4) == b"abcd"
    assert await conn.read(4) == b"ef"
    assert await conn.read(4) == b""


@pytest.mark.asyncio
async def test_encrypted_read_tampered_raises_connection_error():
    reader = asyncio.StreamReader()
    frame = bytearray(controller_frame(b"abcdef", 0))
    frame[-1] ^= 0x01
    reader.feed_data(bytes(frame))
    reader.feed_eof()
    conn = EncryptedConnection(reader, FakeWriter())
    conn.activate(Session(CONTROLLER, SECRET))
    with pytest.raises(ConnectionError):
        await conn.read(10)


@pytest.mark.asyncio
async def test_double_activation_and_close():
    writer = FakeWriter()
    conn = EncryptedConnection(asyncio.StreamReader(), writer)
    conn.activate(Session(CONTROLLER, SECRET))
    with pytest.raises(RuntimeError):
        conn.activate(Session(CONTROLLER, SECRET))
    await conn.close()
    assert writer.closed is True