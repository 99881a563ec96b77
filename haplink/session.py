"""Encrypted framing of an accessory connection once pair verification has succeeded."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from haplink.crypto import hkdf_sha512

_SECRET_LENGTH = 32
_TAG_LENGTH = 16
_LENGTH_PREFIX = 2
_MAX_CHUNK = 1024
_READ_SIZE = 1042
_CONTROL_SALT = b"Control-Salt"


@dataclass(frozen=True)
class Session:
    """A verified controller and the secret shared with it."""

    controller_id: uuid.UUID
    shared_secret: bytes

    def __post_init__(self) -> None:
        secret = bytes(self.shared_secret)
        if len(secret) != _SECRET_LENGTH:
            raise ValueError(f"shared secret must be {_SECRET_LENGTH} bytes long")
        object.__setattr__(self, "shared_secret", secret)


def compute_read_key(shared_secret: bytes) -> bytes:
    """Key for data coming from the controller."""
    return hkdf_sha512(_CONTROL_SALT, shared_secret, b"Control-Write-Encryption-Key")


def compute_write_key(shared_secret: bytes) -> bytes:
    """Key for data going to the controller."""
    return hkdf_sha512(_CONTROL_SALT, shared_secret, b"Control-Read-Encryption-Key")


def _nonce(count: int) -> bytes:
    return bytes(4) + count.to_bytes(8, "little")


def encrypt_chunk(shared_secret: bytes, data: bytes, count: int) -> tuple[bytes, bytes, bytes]:
    """Encrypt one chunk with the given message counter.

    Returns the length prefix (also the associated data), the ciphertext and the tag.
    """
    data = bytes(data)
    if len(data) > 0xFFFF:
        raise ValueError("chunk too long")
    aad = len(data).to_bytes(_LENGTH_PREFIX, "little")
    sealed = ChaCha20Poly1305(compute_write_key(shared_secret)).encrypt(_nonce(count), data, aad)
    return aad, sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]


def decrypt_chunk(shared_secret: bytes, aad: bytes, data: bytes, auth_tag: bytes, count: int) -> bytes:
    """Decrypt one chunk; raises ``InvalidTag`` if it does not authenticate."""
    aead = ChaCha20Poly1305(compute_read_key(shared_secret))
    return aead.decrypt(_nonce(count), bytes(data) + bytes(auth_tag), bytes(aad))


class SessionCipher:
    """Frames and encrypts outgoing data and reassembles and decrypts incoming data."""

    def __init__(self, shared_secret: bytes) -> None:
        secret = bytes(shared_secret)
        if len(secret) != _SECRET_LENGTH:
            raise ValueError(f"shared secret must be {_SECRET_LENGTH} bytes long")
        self.shared_secret = secret
        self.encrypt_count = 0
        self.decrypt_count = 0
        self._buffer = bytearray()

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt data as a series of frames of at most 1024 plaintext bytes."""
        view = memoryview(bytes(data))
        out = bytearray()
        while len(view) > _MAX_CHUNK:
            out += self._seal(view[:_MAX_CHUNK])
            view = view[_MAX_CHUNK:]
        out += self._seal(view)
        return bytes(out)

    def _seal(self, chunk: memoryview) -> bytes:
        aad, ciphertext, tag = encrypt_chunk(self.shared_secret, bytes(chunk), self.encrypt_count)
        self.encrypt_count += 1
        return aad + ciphertext + tag

    def feed(self, data: bytes) -> bytes:
        """Take received bytes and return the plaintext of every frame now complete."""
        self._buffer += data
        out = bytearray()
        while len(self._buffer) >= _LENGTH_PREFIX:
            length = int.from_bytes(self._buffer[:_LENGTH_PREFIX], "little")
            end = _LENGTH_PREFIX + length + _TAG_LENGTH
            if len(self._buffer) < end:
                break
            frame = bytes(self._buffer[:end])
            del self._buffer[:end]
            count = self.decrypt_count
            self.decrypt_count += 1
            out += decrypt_chunk(
                self.shared_secret,
                frame[:_LENGTH_PREFIX],
                frame[_LENGTH_PREFIX:_LENGTH_PREFIX + length],
                frame[_LENGTH_PREFIX + length:],
                count,
            )
        return bytes(out)


class _Writer(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


class EncryptedConnection:
    """A connection that passes data through until a session is activated, then encrypts it.

    An activated session takes effect at the next read, so a response written right after
    activation (the last pair-verify message) still goes out in plain text.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: _Writer) -> None:
        self._reader = reader
        self._writer = writer
        self._pending: Session | None = None
        self._cipher: SessionCipher | None = None
        self._plain = bytearray()
        self.controller_id: uuid.UUID | None = None

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    def activate(self, session: Session) -> None:
        """Hand over the session established by pair verification."""
        if self._cipher is not None or self._pending is not None:
            raise RuntimeError("session already activated")
        self._pending = session

    def _apply_pending(self) -> None:
        if self._pending is not None:
            self.controller_id = self._pending.controller_id
            self._cipher = SessionCipher(self._pending.shared_secret)
            self._pending = None

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes of plaintext; an empty result means end of stream."""
        self._apply_pending()
        if self._cipher is None:
            return await self._reader.read(n)
        if n == 0:
            return b""
        while not self._plain:
            data = await self._reader.read(_READ_SIZE)
            if not data:
                return b""
            try:
                self._plain += self._cipher.feed(data)
            except InvalidTag as exc:
                raise ConnectionError("decryption failed") from exc
        size = len(self._plain) if n < 0 else min(n, len(self._plain))
        chunk = bytes(self._plain[:size])
        del self._plain[:size]
        return chunk

    async def write(self, data: bytes) -> int:
        """Write data, encrypted if a session is in effect; returns the plaintext length."""
        data = bytes(data)
        payload = self._cipher.encrypt(data) if self._cipher is not None else data
        self._writer.write(payload)
        await self._writer.drain()
        return len(data)

    async def close(self) -> None:
        """Close the underlying stream."""
        self._writer.close()
        await self._writer.wait_closed()