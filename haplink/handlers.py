"""Request handlers for the accessory and characteristic endpoints."""

from __future__ import annotations

import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Optional
from urllib.parse import parse_qsl

from haplink.database import AccessoryDatabase, EventEmitter
from haplink.responses import (
    ReadResponseObject,
    Response,
    Status,
    WriteObject,
    WriteResponseObject,
    json_response,
    status_response,
    tlv_response,
)
from haplink.session import EncryptedConnection
from haplink.storage import Storage
from haplink.tlv import PairingError, Value, encode_values

_log = logging.getLogger(__name__)

ACCESSORY_INFORMATION_TYPE = "3E"
IDENTIFY_TYPE = "14"

_U64 = re.compile(r"\+?[0-9]+")


@dataclass
class Request:
    """An HTTP request as seen by a handler."""

    method: str
    path: str
    query: Optional[str] = None
    body: bytes = b""


@dataclass
class HandlerContext:
    """The server state a handler may work with."""

    storage: Storage
    accessory_database: AccessoryDatabase
    event_emitter: EventEmitter = field(default_factory=EventEmitter)
    config: Any = None
    event_subscriptions: list[tuple[int, int]] = field(default_factory=list)
    controller_id: Optional[uuid.UUID] = None
    connection: Optional[EncryptedConnection] = None


class HttpStatusError(Exception):
    """Ends a request with the given HTTP status and an empty body."""

    def __init__(self, status: int) -> None:
        self.status = HTTPStatus(status)
        super().__init__(f"{self.status.value} {self.status.phrase}")


def _dumps(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _characteristics_body(objects: list) -> bytes:
    return _dumps({"characteristics": [obj.to_dict() for obj in objects]})


def _parse_u64(text: str) -> int:
    if not _U64.fullmatch(text):
        raise ValueError(f"invalid ID {text!r}")
    value = int(text)
    if value >= 1 << 64:
        raise ValueError(f"ID {text!r} out of range")
    return value


def check_flags(queries: dict[str, str]) -> tuple[bool, bool, bool, bool]:
    """Return the ``meta``, ``perms``, ``type`` and ``ev`` query flags."""
    return tuple(queries.get(name) == "1" for name in ("meta", "perms", "type", "ev"))  # type: ignore[return-value]


class TlvHandler(ABC):
    """A pairing endpoint that speaks TLV8; pairing failures become error TLVs."""

    async def respond(self, request: Request, context: HandlerContext) -> Response:
        try:
            step = self.parse(request.body)
            result = await self.handle(step, context)
        except PairingError as exc:
            body = exc.encode()
        else:
            body = encode_values(result)
        return tlv_response(body, HTTPStatus.OK)

    @abstractmethod
    def parse(self, body: bytes) -> Any:
        """Turn the request body into a step; raise :class:`PairingError` on bad input."""

    @abstractmethod
    async def handle(self, step: Any, context: HandlerContext) -> list[Value]:
        """Carry out a step and return the TLV items of the reply."""


class JsonHandler(ABC):
    """An endpoint that speaks JSON; failures become bare status responses."""

    async def respond(self, request: Request, context: HandlerContext) -> Response:
        try:
            return await self.handle(request, context)
        except HttpStatusError as exc:
            return status_response(exc.status)
        except Exception:
            _log.exception("error handling %s %s", request.method, request.path)
            return status_response(HTTPStatus.INTERNAL_SERVER_ERROR)

    @abstractmethod
    async def handle(self, request: Request, context: HandlerContext) -> Response:
        """Produce the response to a request."""


class Accessories(JsonHandler):
    """``GET /accessories``: list every accessory."""

    async def handle(self, request: Request, context: HandlerContext) -> Response:
        _log.info("received list accessories request")
        return json_response(context.accessory_database.as_serialized_json(), HTTPStatus.OK)


class GetCharacteristics(JsonHandler):
    """``GET /characteristics``: read the characteristics named in the ``id`` query."""

    async def handle(self, request: Request, context: HandlerContext) -> Response:
        if request.query is None:
            return status_response(HTTPStatus.BAD_REQUEST)
        queries = dict(parse_qsl(request.query, keep_blank_values=True))
        meta, perms, hap_type, ev = check_flags(queries)
        if "id" not in queries:
            raise HttpStatusError(HTTPStatus.BAD_REQUEST)

        results: list[ReadResponseObject] = []
        some_err = False
        for item in queries["id"].split(","):
            pair = item.split(".")
            if len(pair) != 2:
                raise HttpStatusError(HTTPStatus.BAD_REQUEST)
            aid, iid = _parse_u64(pair[0]), _parse_u64(pair[1])
            try:
                result = await context.accessory_database.read_characteristic(
                    aid, iid, meta, perms, hap_type, ev
                )
            except Exception:
                _log.exception("error reading characteristic")
                some_err = True
                result = ReadResponseObject(
                    iid=iid, aid=aid, status=int(Status.SERVICE_COMMUNICATION_FAILURE)
                )
            else:
                if result.status != 0:
                    some_err = True
                    result.value = None
            results.append(result)

        if some_err:
            return json_response(_characteristics_body(results), HTTPStatus.MULTI_STATUS)
        for result in results:
            result.status = None
        return json_response(_characteristics_body(results), HTTPStatus.OK)


class UpdateCharacteristics(JsonHandler):
    """``PUT /characteristics``: write values and event subscriptions."""

    async def handle(self, request: Request, context: HandlerContext) -> Response:
        payload = json.loads(request.body)
        if not isinstance(payload, dict) or not isinstance(payload.get("characteristics"), list):
            raise ValueError("body must hold a 'characteristics' list")
        writes = [WriteObject.from_dict(item) for item in payload["characteristics"]]

        results: list[WriteResponseObject] = []
        some_err = False
        all_err = True
        for write in writes:
            try:
                result = await context.accessory_database.write_characteristic(
                    write, context.event_subscriptions
                )
            except Exception:
                _log.exception("error updating characteristic")
                some_err = True
                result = WriteResponseObject(
                    iid=write.iid, aid=write.aid, status=int(Status.SERVICE_COMMUNICATION_FAILURE)
                )
            else:
                if result.status != 0:
                    some_err = True
                else:
                    all_err = False
            results.append(result)

        if all_err:
            return json_response(_characteristics_body(results), HTTPStatus.BAD_REQUEST)
        if some_err:
            return json_response(_characteristics_body(results), HTTPStatus.MULTI_STATUS)
        return status_response(HTTPStatus.NO_CONTENT)


class Identify(JsonHandler):
    """``POST /identify``: make unpaired accessories identify themselves."""

    async def handle(self, request: Request, context: HandlerContext) -> Response:
        if await context.storage.count_pairings() > 0:
            body = _dumps({"status": int(Status.INSUFFICIENT_PRIVILEGES)})
            return json_response(body, HTTPStatus.BAD_REQUEST)

        for accessory in context.accessory_database.accessories:
            service = accessory.get_service(ACCESSORY_INFORMATION_TYPE)
            if service is None:
                raise LookupError("missing Accessory Information service")
            characteristic = service.get_characteristic(IDENTIFY_TYPE)
            if characteristic is None:
                raise LookupError("missing Identify characteristic on Accessory Information service")
            await characteristic.set_value(True)

        return status_response(HTTPStatus.NO_CONTENT)