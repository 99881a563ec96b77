"""TLV8 encoding and decoding used by the pairing endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

_MAX_FRAGMENT = 255


class TlvType(IntEnum):
    """TLV item types defined by the protocol."""

    METHOD = 0x00
    IDENTIFIER = 0x01
    SALT = 0x02
    PUBLIC_KEY = 0x03
    PROOF = 0x04
    ENCRYPTED_DATA = 0x05
    STATE = 0x06
    ERROR = 0x07
    RETRY_DELAY = 0x08
    CERTIFICATE = 0x09
    SIGNATURE = 0x0A
    PERMISSIONS = 0x0B
    FRAGMENT_DATA = 0x0C
    FRAGMENT_LAST = 0x0D
    FLAGS = 0x13
    SEPARATOR = 0xFF


class Method(IntEnum):
    """Pairing methods."""

    PAIR_SETUP = 1
    PAIR_VERIFY = 2
    ADD_PAIRING = 3
    REMOVE_PAIRING = 4
    LIST_PAIRINGS = 5


class Permissions(IntEnum):
    """Permissions of a paired controller."""

    USER = 0x00
    ADMIN = 0x01


class ErrorCode(IntEnum):
    """Error codes carried in an error TLV item."""

    UNKNOWN = 0x01
    AUTHENTICATION = 0x02
    BACKOFF = 0x03
    MAX_PEERS = 0x04
    MAX_TRIES = 0x05
    UNAVAILABLE = 0x06
    BUSY = 0x07

    @property
    def message(self) -> str:
        return _ERROR_MESSAGES[self]


_ERROR_MESSAGES = {
    ErrorCode.UNKNOWN: "Generic error to handle unexpected errors.",
    ErrorCode.AUTHENTICATION: "Setup code or signature verification failed.",
    ErrorCode.BACKOFF: (
        "Client must look at the retry delay TLV item and wait that many seconds before retrying."
    ),
    ErrorCode.MAX_PEERS: "Server cannot accept any more pairings.",
    ErrorCode.MAX_TRIES: "Server reached its maximum number of authentication attempts.",
    ErrorCode.UNAVAILABLE: "Server pairing method is unavailable.",
    ErrorCode.BUSY: "Server is busy and cannot accept a pairing request at this time.",
}


def encode(tlvs: Iterable[tuple[int, bytes]]) -> bytes:
    """Encode ``(type, value)`` pairs as concatenated TLV8 items.

    Values longer than 255 bytes are split into consecutive fragments of the same type.
    """
    out = bytearray()
    for kind, value in tlvs:
        value = bytes(value)
        if len(value) <= _MAX_FRAGMENT:
            out += bytes((kind, len(value))) + value
            continue
        pos = 0
        remaining = len(value)
        while remaining > _MAX_FRAGMENT:
            out += bytes((kind, _MAX_FRAGMENT)) + value[pos:pos + _MAX_FRAGMENT]
            remaining -= _MAX_FRAGMENT
            pos += _MAX_FRAGMENT
        if remaining:
            out += bytes((kind, remaining)) + value[pos:]
    return bytes(out)


def decode(data: bytes) -> dict[int, bytes]:
    """Decode concatenated TLV8 items into a ``{type: value}`` mapping.

    Fragments of 255 bytes are joined with the items that follow them; when a type occurs
    more than once as a separate item, the last occurrence wins.
    """
    view = bytes(data)
    items: dict[int, bytes] = {}
    pending = bytearray()
    previous = 0
    pos = 0
    while pos < len(view):
        if pos + 2 > len(view):
            raise ValueError("truncated TLV header")
        kind, length = view[pos], view[pos + 1]
        end = pos + 2 + length
        if end > len(view):
            raise ValueError("truncated TLV value")
        chunk = view[pos + 2:end]
        if kind != previous and pending:
            items[previous] = bytes(pending)
            pending.clear()
        pending += chunk
        if length < _MAX_FRAGMENT:
            items[kind] = bytes(pending)
            pending.clear()
        previous = kind
        pos = end
    if pending:
        items[previous] = bytes(pending)
    return items


@dataclass(frozen=True)
class Value:
    """A typed TLV item; build it with one of the named constructors."""

    kind: TlvType
    payload: object = None

    @classmethod
    def method(cls, method: int) -> Value:
        return cls(TlvType.METHOD, Method(method))

    @classmethod
    def identifier(cls, identifier: str) -> Value:
        return cls(TlvType.IDENTIFIER, identifier)

    @classmethod
    def salt(cls, salt: bytes) -> Value:
        salt = bytes(salt)
        if len(salt) != 16:
            raise ValueError("salt must be 16 bytes long")
        return cls(TlvType.SALT, salt)

    @classmethod
    def public_key(cls, key: bytes) -> Value:
        return cls(TlvType.PUBLIC_KEY, bytes(key))

    @classmethod
    def proof(cls, proof: bytes) -> Value:
        return cls(TlvType.PROOF, bytes(proof))

    @classmethod
    def encrypted_data(cls, data: bytes) -> Value:
        return cls(TlvType.ENCRYPTED_DATA, bytes(data))

    @classmethod
    def state(cls, state: int) -> Value:
        if not 0 <= state <= 0xFF:
            raise ValueError("state must fit in one byte")
        return cls(TlvType.STATE, state)

    @classmethod
    def error(cls, error: int) -> Value:
        return cls(TlvType.ERROR, ErrorCode(error))

    @classmethod
    def retry_delay(cls, delay: int) -> Value:
        return cls(TlvType.RETRY_DELAY, delay)

    @classmethod
    def certificate(cls, certificate: bytes) -> Value:
        return cls(TlvType.CERTIFICATE, bytes(certificate))

    @classmethod
    def signature(cls, signature: bytes) -> Value:
        return cls(TlvType.SIGNATURE, bytes(signature))

    @classmethod
    def permissions(cls, permissions: int) -> Value:
        return cls(TlvType.PERMISSIONS, Permissions(permissions))

    @classmethod
    def fragment_data(cls, data: bytes) -> Value:
        return cls(TlvType.FRAGMENT_DATA, bytes(data))

    @classmethod
    def fragment_last(cls, data: bytes) -> Value:
        return cls(TlvType.FRAGMENT_LAST, bytes(data))

    @classmethod
    def flags(cls, flags: int) -> Value:
        if not 0 <= flags <= 0xFFFFFFFF:
            raise ValueError("flags must fit in 32 bits")
        return cls(TlvType.FLAGS, flags)

    @classmethod
    def separator(cls) -> Value:
        return cls(TlvType.SEPARATOR)

    def as_tlv(self) -> tuple[int, bytes]:
        """Return the item as a ``(type, value bytes)`` pair."""
        kind = TlvType(self.kind)
        payload = self.payload
        if kind is TlvType.IDENTIFIER:
            data = str(payload).encode("utf-8")
        elif kind in (TlvType.METHOD, TlvType.STATE, TlvType.ERROR, TlvType.PERMISSIONS):
            data = bytes((int(payload),))
        elif kind is TlvType.RETRY_DELAY:
            data = (int(payload) & 0xFFFF).to_bytes(2, "little")
        elif kind is TlvType.FLAGS:
            data = int(payload).to_bytes(4, "little")
        elif kind is TlvType.SEPARATOR:
            data = b"\x00"
        else:
            data = bytes(payload)
        return int(kind), data


def encode_values(values: Iterable[Value]) -> bytes:
    """Encode a sequence of :class:`Value` items."""
    return encode(value.as_tlv() for value in values)


class PairingError(Exception):
    """A pairing failure to be reported to the controller as a state and error TLV."""

    def __init__(self, step: int, error: int = ErrorCode.UNKNOWN) -> None:
        self.step = step
        self.error = ErrorCode(error)
        super().__init__(self.error.message)

    def encode(self) -> bytes:
        return encode_values([Value.state(self.step), Value.error(self.error)])