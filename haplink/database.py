"""The accessories an accessory server exposes, and the events they raise."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

from haplink.responses import ReadResponseObject, Status, WriteObject, WriteResponseObject

_log = logging.getLogger(__name__)


class Perm(str, Enum):
    """Permissions of a characteristic."""

    PAIRED_READ = "pr"
    PAIRED_WRITE = "pw"
    EVENTS = "ev"
    ADDITIONAL_AUTHORIZATION = "aa"
    TIMED_WRITE = "tw"
    HIDDEN = "hd"
    WRITE_RESPONSE = "wr"


@dataclass(frozen=True)
class CharacteristicValueChanged:
    """The value of a characteristic changed."""

    aid: int
    iid: int
    value: Any


@dataclass(frozen=True)
class ControllerPaired:
    """A controller was paired or had its pairing updated."""

    id: uuid.UUID


@dataclass(frozen=True)
class ControllerUnpaired:
    """A controller's pairing was removed."""

    id: uuid.UUID


Event = Union[CharacteristicValueChanged, ControllerPaired, ControllerUnpaired]
Listener = Callable[[Event], Awaitable[None]]


class EventEmitter:
    """Delivers events to registered asynchronous listeners in registration order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def emit(self, event: Event) -> None:
        for listener in list(self._listeners):
            await listener(event)


class AccessoryNotFoundError(LookupError):
    """The accessory is not part of the database."""


class _Characteristic(Protocol):
    id: int
    hap_type: Any
    format: Any
    perms: list[Perm]
    unit: Any
    max_value: Any
    min_value: Any
    step_value: Any
    max_len: Optional[int]
    event_notifications: Optional[bool]

    async def get_value(self) -> Any: ...

    async def set_value(self, value: Any) -> None: ...


class _Service(Protocol):
    characteristics: Iterable[_Characteristic]

    def get_characteristic(self, hap_type: Any) -> Optional[_Characteristic]: ...


class _Accessory(Protocol):
    id: int
    services: Iterable[_Service]

    def set_event_emitter(self, emitter: Optional[EventEmitter]) -> None: ...

    def get_service(self, hap_type: Any) -> Optional[_Service]: ...

    def to_dict(self) -> dict[str, Any]: ...


class AccessoryDatabase:
    """The list of accessories served, with reads and writes addressed by ``(aid, iid)``."""

    def __init__(self, event_emitter: EventEmitter) -> None:
        self.accessories: list[_Accessory] = []
        self.event_emitter = event_emitter

    def add_accessory(self, accessory: _Accessory) -> _Accessory:
        """Add an accessory, wiring its characteristics to the event emitter."""
        accessory.set_event_emitter(self.event_emitter)
        self.accessories.append(accessory)
        return accessory

    def remove_accessory(self, accessory: _Accessory) -> None:
        """Remove the accessory with the same ID as the one given."""
        for position, candidate in enumerate(self.accessories):
            if candidate.id == accessory.id:
                candidate.set_event_emitter(None)
                del self.accessories[position]
                return
        raise AccessoryNotFoundError(f"no accessory with ID {accessory.id}")

    def _find(self, aid: int, iid: int) -> Optional[_Characteristic]:
        for accessory in self.accessories:
            if accessory.id != aid:
                continue
            for service in accessory.services:
                for characteristic in service.characteristics:
                    if characteristic.id == iid:
                        return characteristic
        return None

    async def read_characteristic(
        self, aid: int, iid: int, meta: bool, perms: bool, hap_type: bool, ev: bool
    ) -> ReadResponseObject:
        """Read a characteristic, adding the metadata the flags ask for."""
        result = ReadResponseObject(iid=iid, aid=aid, status=int(Status.SUCCESS))
        characteristic = self._find(aid, iid)
        if characteristic is None:
            return result
        characteristic_perms = list(characteristic.perms)
        if Perm.PAIRED_READ not in characteristic_perms:
            result.status = int(Status.WRITE_ONLY_CHARACTERISTIC)
            return result
        result.value = await characteristic.get_value()
        if meta:
            result.format = characteristic.format
            result.unit = characteristic.unit
            result.max_value = characteristic.max_value
            result.min_value = characteristic.min_value
            result.step_value = characteristic.step_value
            result.max_len = characteristic.max_len
        if perms:
            result.perms = characteristic_perms
        if hap_type:
            result.hap_type = characteristic.hap_type
        if ev:
            result.ev = characteristic.event_notifications
        return result

    async def write_characteristic(
        self, write_object: WriteObject, event_subscriptions: list[tuple[int, int]]
    ) -> WriteResponseObject:
        """Apply an event subscription change and/or a value write to a characteristic."""
        result = WriteResponseObject(iid=write_object.iid, aid=write_object.aid, status=int(Status.SUCCESS))
        characteristic = self._find(write_object.aid, write_object.iid)
        if characteristic is None:
            return result
        characteristic_perms = list(characteristic.perms)
        if write_object.ev is not None:
            if Perm.EVENTS in characteristic_perms:
                characteristic.event_notifications = write_object.ev
                subscription = (write_object.aid, write_object.iid)
                if write_object.ev and subscription not in event_subscriptions:
                    event_subscriptions.append(subscription)
                elif not write_object.ev and subscription in event_subscriptions:
                    event_subscriptions.remove(subscription)
            else:
                result.status = int(Status.NOTIFICATION_NOT_SUPPORTED)
        if write_object.value is not None:
            if Perm.PAIRED_WRITE in characteristic_perms:
                await characteristic.set_value(write_object.value)
            else:
                result.status = int(Status.READ_ONLY_CHARACTERISTIC)
        return result

    def as_serialized_json(self) -> bytes:
        """Serialise the accessory list as the JSON body of ``GET /accessories``."""
        payload = {"accessories": [accessory.to_dict() for accessory in self.accessories]}
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        _log.debug("accessory list JSON: %s", text)
        return text.encode("utf-8")