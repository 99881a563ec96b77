"""HTTP response objects and builders for the accessory server."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from http import HTTPStatus
from typing import Any, Iterable


class Status(IntEnum):
    """Status codes reported per characteristic."""

    SUCCESS = 0
    INSUFFICIENT_PRIVILEGES = -70401
    SERVICE_COMMUNICATION_FAILURE = -70402
    RESOURCE_BUSY = -70403
    READ_ONLY_CHARACTERISTIC = -70404
    WRITE_ONLY_CHARACTERISTIC = -70405
    NOTIFICATION_NOT_SUPPORTED = -70406
    OUT_OF_RESOURCE = -70407
    OPERATION_TIMED_OUT = -70408
    RESOURCE_DOES_NOT_EXIST = -70409
    INVALID_VALUE_IN_REQUEST = -70410


class ContentType(str, Enum):
    """Content types of response bodies."""

    PAIRING_TLV8 = "application/pairing+tlv8"
    HAP_JSON = "application/hap+json"


@dataclass
class Response:
    """An HTTP response: status, headers and body."""

    status: HTTPStatus
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


@dataclass
class ReadResponseObject:
    """The result of reading one characteristic."""

    iid: int
    aid: int
    hap_type: Any = None
    format: Any = None
    perms: list | None = None
    ev: bool | None = None
    value: Any = None
    unit: Any = None
    max_value: Any = None
    min_value: Any = None
    step_value: Any = None
    max_len: int | None = None
    status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        fields = [
            ("iid", self.iid),
            ("aid", self.aid),
            ("type", self.hap_type),
            ("format", self.format),
            ("perms", self.perms),
            ("ev", self.ev),
            ("value", self.value),
            ("unit", self.unit),
            ("maxValue", self.max_value),
            ("minValue", self.min_value),
            ("minStep", self.step_value),
            ("maxLen", self.max_len),
            ("status", self.status),
        ]
        return {key: _jsonable(value) for key, value in fields if value is not None}


def _require_int(data: dict, key: str) -> int:
    if key not in data:
        raise ValueError(f"missing field {key!r}")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field {key!r} must be a non-negative integer")
    return value


def _optional_bool(data: dict, key: str) -> bool | None:
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ValueError(f"field {key!r} must be a boolean")
    return value


@dataclass
class WriteObject:
    """A requested write to one characteristic."""

    iid: int
    aid: int
    ev: bool | None = None
    value: Any = None
    auth_data: str | None = None
    remote: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WriteObject:
        if not isinstance(data, dict):
            raise ValueError("write object must be a JSON object")
        auth_data = data.get("authData")
        if auth_data is not None and not isinstance(auth_data, str):
            raise ValueError("field 'authData' must be a string")
        return cls(
            iid=_require_int(data, "iid"),
            aid=_require_int(data, "aid"),
            ev=_optional_bool(data, "ev"),
            value=data.get("value"),
            auth_data=auth_data,
            remote=_optional_bool(data, "remote"),
        )


@dataclass
class WriteResponseObject:
    """The result of writing one characteristic."""

    iid: int
    aid: int
    status: int

    def to_dict(self) -> dict[str, Any]:
        return {"iid": self.iid, "aid": self.aid, "status": int(self.status)}


@dataclass
class EventObject:
    """A characteristic value change sent to a subscribed controller."""

    iid: int
    aid: int
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"iid": self.iid, "aid": self.aid, "value": _jsonable(self.value)}


def _response(body: bytes, status: int, content_type: ContentType) -> Response:
    body = bytes(body)
    headers = {"Content-Type": content_type.value, "Content-Length": str(len(body))}
    return Response(HTTPStatus(status), body, headers)


def tlv_response(body: bytes, status: int) -> Response:
    """Build a response carrying a TLV8 body."""
    return _response(body, status, ContentType.PAIRING_TLV8)


def json_response(body: bytes, status: int) -> Response:
    """Build a response carrying a JSON body."""
    return _response(body, status, ContentType.HAP_JSON)


def status_response(status: int) -> Response:
    """Build a response with only a status and an empty body."""
    return Response(HTTPStatus(status))


def event_response(event_objects: Iterable[EventObject]) -> bytes:
    """Render an EVENT/1.0 message announcing characteristic changes."""
    body = _dumps({"characteristics": [event.to_dict() for event in event_objects]}).encode("utf-8")
    head = (
        f"EVENT/1.0 200 OK\nContent-Type: {ContentType.HAP_JSON.value}\n"
        f"Content-Length: {len(body)}\n\n"
    )
    return head.encode("utf-8") + body