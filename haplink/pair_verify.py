"""Pair verification: proves both sides' identities and hands an encrypted session over."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from haplink.crypto import hkdf_sha512
from haplink.handlers import HandlerContext, TlvHandler
from haplink.session import Session
from haplink.tlv import ErrorCode, PairingError, TlvType, Value, decode, encode_values

_log = logging.getLogger(__name__)

_KEY_LENGTH = 32
_TAG_LENGTH = 16
_SIGNATURE_LENGTH = 64

SessionSender = Callable[[Session], None]


class _Step(IntEnum):
    UNKNOWN = 0
    START_REQ = 1
    START_RES = 2
    FINISH_REQ = 3
    FINISH_RES = 4


@dataclass(frozen=True)
class StartStep:
    """M1: the controller's ephemeral Curve25519 public key."""

    a_pub: bytes


@dataclass(frozen=True)
class FinishStep:
    """M3: the controller's encrypted identifier and signature."""

    data: bytes


@dataclass(frozen=True)
class _VerifySession:
    a_pub: bytes
    b_pub: bytes
    shared_secret: bytes
    session_key: bytes


def _nonce(label: bytes) -> bytes:
    return bytes(4) + label


def _raw_public(key: X25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


class PairVerify(TlvHandler):
    """``POST /pair-verify``.

    On success the session is passed to ``session_sender`` if one was given, else to the
    connection in the handler context. A session is handed over at most once.
    """

    def __init__(self, session_sender: Optional[SessionSender] = None) -> None:
        self._session_sender = session_sender
        self._session: Optional[_VerifySession] = None
        self._session_sent = False

    def parse(self, body: bytes) -> StartStep | FinishStep:
        try:
            decoded = decode(body)
        except ValueError:
            raise PairingError(_Step.UNKNOWN) from None
        _log.debug("received body: %r", bytes(body))

        state = decoded.get(TlvType.STATE)
        if not state:
            raise PairingError(_Step.UNKNOWN)
        if state[0] == _Step.START_REQ:
            a_pub = decoded.get(TlvType.PUBLIC_KEY)
            if a_pub is None:
                raise PairingError(_Step.START_RES)
            return StartStep(a_pub)
        if state[0] == _Step.FINISH_REQ:
            data = decoded.get(TlvType.ENCRYPTED_DATA)
            if data is None:
                raise PairingError(_Step.FINISH_RES)
            return FinishStep(data)
        raise PairingError(_Step.UNKNOWN)

    async def handle(self, step: StartStep | FinishStep, context: HandlerContext) -> list[Value]:
        if isinstance(step, StartStep):
            return self._start(step.a_pub, context)
        if isinstance(step, FinishStep):
            return await self._finish(step.data, context)
        raise PairingError(_Step.UNKNOWN)

    def _start(self, a_pub_bytes: bytes, context: HandlerContext) -> list[Value]:
        _log.info("pair verify M1: received verify start request")

        def fail(code: ErrorCode) -> PairingError:
            return PairingError(_Step.START_RES, code)

        a_pub_bytes = bytes(a_pub_bytes)
        if len(a_pub_bytes) < _KEY_LENGTH:
            raise fail(ErrorCode.UNKNOWN)
        a_pub = a_pub_bytes[:_KEY_LENGTH]
        try:
            controller_key = X25519PublicKey.from_public_bytes(a_pub)
        except ValueError:
            raise fail(ErrorCode.UNKNOWN) from None

        ephemeral = X25519PrivateKey.generate()
        b_pub = _raw_public(ephemeral)
        try:
            shared_secret = ephemeral.exchange(controller_key)
        except ValueError:
            raise fail(ErrorCode.UNKNOWN) from None

        config = context.config
        device_id = str(config.device_id)
        accessory_info = b_pub + device_id.encode("utf-8") + a_pub
        signature = bytes(config.device_ed25519_keypair.sign(accessory_info))

        sub_tlv = encode_values([Value.identifier(device_id), Value.signature(signature)])
        session_key = hkdf_sha512(
            b"Pair-Verify-Encrypt-Salt", shared_secret, b"Pair-Verify-Encrypt-Info"
        )
        self._session = _VerifySession(a_pub, b_pub, shared_secret, session_key)

        encrypted = ChaCha20Poly1305(session_key).encrypt(_nonce(b"PV-Msg02"), sub_tlv, None)

        _log.info("pair verify M2: sending verify start response")
        return [
            Value.state(_Step.START_RES),
            Value.public_key(b_pub),
            Value.encrypted_data(encrypted),
        ]

    def _sender(self, context: HandlerContext) -> Optional[SessionSender]:
        if self._session_sender is not None:
            return self._session_sender
        if context.connection is not None:
            return context.connection.activate
        return None

    async def _finish(self, data: bytes, context: HandlerContext) -> list[Value]:
        _log.info("pair verify M3: received verify finish request")

        def fail(code: ErrorCode) -> PairingError:
            return PairingError(_Step.FINISH_RES, code)

        session = self._session
        if session is None:
            raise fail(ErrorCode.UNKNOWN)
        data = bytes(data)
        if len(data) < _TAG_LENGTH:
            raise fail(ErrorCode.UNKNOWN)

        try:
            decrypted = ChaCha20Poly1305(session.session_key).decrypt(
                _nonce(b"PV-Msg03"), data, None
            )
        except InvalidTag:
            raise fail(ErrorCode.AUTHENTICATION) from None

        try:
            sub_tlv = decode(decrypted)
        except ValueError:
            raise fail(ErrorCode.UNKNOWN) from None
        device_pairing_id = sub_tlv.get(TlvType.IDENTIFIER)
        if device_pairing_id is None:
            raise fail(ErrorCode.UNKNOWN)
        device_signature = sub_tlv.get(TlvType.SIGNATURE)
        if device_signature is None:
            raise fail(ErrorCode.UNKNOWN)
        if len(device_signature) != _SIGNATURE_LENGTH:
            raise fail(ErrorCode.AUTHENTICATION)

        try:
            pairing_uuid = uuid.UUID(device_pairing_id.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise fail(ErrorCode.UNKNOWN) from None
        _log.info("device pairing UUID: %s", pairing_uuid)

        try:
            pairing = await context.storage.load_pairing(pairing_uuid)
        except Exception:
            _log.exception("couldn't load pairing %s", pairing_uuid)
            raise fail(ErrorCode.UNKNOWN) from None

        try:
            controller_key = Ed25519PublicKey.from_public_bytes(pairing.public_key)
        except ValueError:
            raise fail(ErrorCode.AUTHENTICATION) from None
        device_info = session.a_pub + device_pairing_id + session.b_pub
        try:
            controller_key.verify(device_signature, device_info)
        except InvalidSignature:
            raise fail(ErrorCode.AUTHENTICATION) from None

        sender = self._sender(context)
        if sender is None or self._session_sent:
            raise fail(ErrorCode.UNKNOWN)
        try:
            sender(Session(pairing_uuid, session.shared_secret))
        except RuntimeError:
            raise fail(ErrorCode.UNKNOWN) from None
        self._session_sent = True

        _log.info("pair verify M4: sending verify finish response")
        return [Value.state(_Step.FINISH_RES)]