"""Adding, removing and listing pairings on behalf of an admin controller."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from haplink.database import ControllerPaired, ControllerUnpaired
from haplink.handlers import HandlerContext, TlvHandler
from haplink.storage import Pairing, Storage
from haplink.tlv import ErrorCode, Method, PairingError, Permissions, TlvType, Value, decode

_log = logging.getLogger(__name__)

_KEY_LENGTH = 32
_REQUEST_STATE = b"\x01"


class _Step(IntEnum):
    UNKNOWN = 0
    RES = 2


@dataclass(frozen=True)
class AddPairing:
    """Add a pairing, or update the permissions of an existing one."""

    pairing_id: bytes
    ltpk: bytes
    permissions: Permissions


@dataclass(frozen=True)
class RemovePairing:
    """Remove a pairing."""

    pairing_id: bytes


@dataclass(frozen=True)
class ListPairings:
    """List every pairing."""


def _fail(code: ErrorCode) -> PairingError:
    return PairingError(_Step.RES, code)


async def check_admin(controller_id: Optional[uuid.UUID], storage: Storage) -> None:
    """Raise an authentication failure unless the controller is a paired admin."""
    if controller_id is None:
        raise _fail(ErrorCode.AUTHENTICATION)
    try:
        controller = await storage.load_pairing(controller_id)
    except Exception:
        raise _fail(ErrorCode.AUTHENTICATION) from None
    if controller.permissions != Permissions.ADMIN:
        raise _fail(ErrorCode.AUTHENTICATION)


def _controller_id(context: HandlerContext) -> Optional[uuid.UUID]:
    connection = context.connection
    if connection is not None and connection.controller_id is not None:
        return connection.controller_id
    return context.controller_id


def _parse_uuid(raw: bytes) -> uuid.UUID:
    try:
        return uuid.UUID(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise _fail(ErrorCode.UNKNOWN) from None


def _validated_key(raw: bytes) -> bytes:
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes(raw))
    except ValueError:
        raise _fail(ErrorCode.AUTHENTICATION) from None
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)


class Pairings(TlvHandler):
    """``POST /pairings``."""

    def parse(self, body: bytes) -> AddPairing | RemovePairing | ListPairings:
        try:
            decoded = decode(body)
        except ValueError:
            raise PairingError(_Step.UNKNOWN) from None
        _log.debug("received body: %r", bytes(body))

        if decoded.get(TlvType.STATE) != _REQUEST_STATE:
            raise PairingError(_Step.UNKNOWN)
        method = decoded.get(TlvType.METHOD)
        if not method:
            raise PairingError(_Step.UNKNOWN)

        def required(kind: TlvType) -> bytes:
            value = decoded.get(kind)
            if value is None:
                raise PairingError(_Step.RES)
            return value

        if method[0] == Method.ADD_PAIRING:
            pairing_id = required(TlvType.IDENTIFIER)
            ltpk = required(TlvType.PUBLIC_KEY)
            perms = required(TlvType.PERMISSIONS)
            try:
                permissions = Permissions(perms[0])
            except (IndexError, ValueError):
                raise PairingError(_Step.RES) from None
            return AddPairing(pairing_id, ltpk, permissions)
        if method[0] == Method.REMOVE_PAIRING:
            return RemovePairing(required(TlvType.IDENTIFIER))
        if method[0] == Method.LIST_PAIRINGS:
            return ListPairings()
        raise PairingError(_Step.UNKNOWN)

    async def handle(
        self, step: AddPairing | RemovePairing | ListPairings, context: HandlerContext
    ) -> list[Value]:
        if isinstance(step, AddPairing):
            return await self._add(step, context)
        if isinstance(step, RemovePairing):
            return await self._remove(step, context)
        if isinstance(step, ListPairings):
            return await self._list(context)
        raise PairingError(_Step.UNKNOWN)

    async def _add(self, step: AddPairing, context: HandlerContext) -> list[Value]:
        _log.info("pairings M1: received add pairing request")
        storage = context.storage
        await check_admin(_controller_id(context), storage)
        pairing_uuid = _parse_uuid(step.pairing_id)

        try:
            existing: Optional[Pairing] = await storage.load_pairing(pairing_uuid)
        except Exception:
            existing = None

        if existing is not None:
            if _validated_key(existing.public_key) != _validated_key(step.ltpk):
                raise _fail(ErrorCode.UNKNOWN)
            pairing = dataclasses.replace(existing, permissions=step.permissions)
        else:
            max_peers = getattr(context.config, "max_peers", None)
            if max_peers is not None:
                try:
                    count = await storage.count_pairings()
                except Exception:
                    raise _fail(ErrorCode.UNKNOWN) from None
                if count + 1 > max_peers:
                    raise _fail(ErrorCode.MAX_PEERS)
            if len(step.ltpk) != _KEY_LENGTH:
                raise _fail(ErrorCode.UNKNOWN)
            pairing = Pairing(pairing_uuid, step.permissions, step.ltpk)

        try:
            await storage.save_pairing(pairing)
        except Exception:
            _log.exception("couldn't save pairing %s", pairing.id)
            raise _fail(ErrorCode.UNKNOWN) from None

        await context.event_emitter.emit(ControllerPaired(pairing.id))

        _log.info("pairings M2: sending add pairing response")
        return [Value.state(_Step.RES)]

    async def _remove(self, step: RemovePairing, context: HandlerContext) -> list[Value]:
        _log.info("pairings M1: received remove pairing request")
        await check_admin(_controller_id(context), context.storage)
        pairing_uuid = _parse_uuid(step.pairing_id)
        try:
            await context.storage.delete_pairing(pairing_uuid)
        except Exception:
            _log.exception("couldn't delete pairing %s", pairing_uuid)
            raise _fail(ErrorCode.UNKNOWN) from None

        await context.event_emitter.emit(ControllerUnpaired(pairing_uuid))

        _log.info("pairings M2: sending remove pairing response")
        return [Value.state(_Step.RES)]

    async def _list(self, context: HandlerContext) -> list[Value]:
        _log.info("pairings M1: received list pairings request")
        await check_admin(_controller_id(context), context.storage)
        try:
            pairings = await context.storage.list_pairings()
        except Exception:
            _log.exception("couldn't list pairings")
            raise _fail(ErrorCode.UNKNOWN) from None

        items = [Value.state(_Step.RES)]
        for pairing in pairings:
            items.append(Value.identifier(str(pairing.id)))
            items.append(Value.public_key(pairing.public_key))
            items.append(Value.permissions(pairing.permissions))
            items.append(Value.separator())

        _log.info("pairings M2: sending list pairings response")
        return items