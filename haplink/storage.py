"""Persistent storage for the accessory configuration, pairings and custom data."""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from haplink.tlv import Permissions

_PUBLIC_KEY_LENGTH = 32
_CONFIG_FILE = "config.json"
_AID_CACHE_FILE = "aid_cache.json"
_PAIRINGS_DIR = "pairings"
_MISC_DIR = "misc"


@dataclass(frozen=True)
class Pairing:
    """A paired controller: its identifier, permissions and long-term public key."""

    id: uuid.UUID
    permissions: Permissions
    public_key: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.id, uuid.UUID):
            object.__setattr__(self, "id", uuid.UUID(str(self.id)))
        object.__setattr__(self, "permissions", Permissions(self.permissions))
        key = bytes(self.public_key)
        if len(key) != _PUBLIC_KEY_LENGTH:
            raise ValueError(f"public key must be {_PUBLIC_KEY_LENGTH} bytes long")
        object.__setattr__(self, "public_key", key)

    def to_bytes(self) -> bytes:
        """Serialise the pairing as JSON."""
        payload = {
            "id": str(self.id),
            "permissions": int(self.permissions),
            "public_key": list(self.public_key),
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> Pairing:
        """Deserialise a pairing written by :meth:`to_bytes`."""
        payload = json.loads(bytes(data).decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("pairing must be a JSON object")
        try:
            raw_id = payload["id"]
            raw_permissions = payload["permissions"]
            raw_key = payload["public_key"]
        except KeyError as exc:
            raise ValueError(f"missing pairing field {exc.args[0]!r}") from None
        if not isinstance(raw_key, list) or not all(
            isinstance(byte, int) and 0 <= byte <= 0xFF for byte in raw_key
        ):
            raise ValueError("public key must be a list of bytes")
        return cls(uuid.UUID(str(raw_id)), Permissions(raw_permissions), bytes(raw_key))


class Storage(ABC):
    """The persistent data storage an accessory server works with."""

    @abstractmethod
    async def load_config(self) -> Any:
        """Load the configuration."""

    @abstractmethod
    async def save_config(self, config: Any) -> None:
        """Save the configuration."""

    @abstractmethod
    async def delete_config(self) -> None:
        """Delete the configuration."""

    @abstractmethod
    async def load_aid_cache(self) -> list[int]:
        """Load the accessory ID cache."""

    @abstractmethod
    async def save_aid_cache(self, aid_cache: list[int]) -> None:
        """Save the accessory ID cache."""

    @abstractmethod
    async def delete_aid_cache(self) -> None:
        """Delete the accessory ID cache."""

    @abstractmethod
    async def load_pairing(self, pairing_id: uuid.UUID) -> Pairing:
        """Load one pairing."""

    @abstractmethod
    async def save_pairing(self, pairing: Pairing) -> None:
        """Save one pairing."""

    @abstractmethod
    async def delete_pairing(self, pairing_id: uuid.UUID) -> None:
        """Delete one pairing."""

    @abstractmethod
    async def list_pairings(self) -> list[Pairing]:
        """Load all pairings."""

    @abstractmethod
    async def count_pairings(self) -> int:
        """Return the number of stored pairings."""

    @abstractmethod
    async def load_bytes(self, key: str) -> bytes:
        """Load arbitrary bytes."""

    @abstractmethod
    async def save_bytes(self, key: str, value: bytes) -> None:
        """Save arbitrary bytes."""

    @abstractmethod
    async def delete_bytes(self, key: str) -> None:
        """Delete arbitrary bytes."""


class FileStorage(Storage):
    """A :class:`Storage` keeping its data in files below one directory.

    The configuration is any JSON-serialisable value.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        for sub in (self.directory, self.directory / _PAIRINGS_DIR, self.directory / _MISC_DIR):
            sub.mkdir(parents=True, exist_ok=True)

    @classmethod
    def current_dir(cls) -> FileStorage:
        """Create a storage in ``data`` below the current working directory."""
        return cls(Path.cwd() / "data")

    def _path(self, key: str) -> Path:
        return self.directory / key

    async def _read(self, key: str) -> bytes:
        return await asyncio.to_thread(self._path(key).read_bytes)

    async def _write(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._path(key).write_bytes, bytes(value))

    async def _remove(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink)

    async def _list(self, key: str) -> list[Path]:
        def entries() -> list[Path]:
            return sorted(self._path(key).iterdir())

        return await asyncio.to_thread(entries)

    @staticmethod
    def _pairing_key(pairing_id: uuid.UUID | str) -> str:
        return f"{_PAIRINGS_DIR}/{uuid.UUID(str(pairing_id))}.json"

    async def load_config(self) -> Any:
        return json.loads(await self._read(_CONFIG_FILE))

    async def save_config(self, config: Any) -> None:
        await self._write(_CONFIG_FILE, json.dumps(config).encode("utf-8"))

    async def delete_config(self) -> None:
        await self._remove(_CONFIG_FILE)

    async def load_aid_cache(self) -> list[int]:
        aid_cache = json.loads(await self._read(_AID_CACHE_FILE))
        if not isinstance(aid_cache, list) or not all(
            isinstance(aid, int) and not isinstance(aid, bool) and aid >= 0 for aid in aid_cache
        ):
            raise ValueError("AID cache must be a list of non-negative integers")
        return aid_cache

    async def save_aid_cache(self, aid_cache: list[int]) -> None:
        await self._write(_AID_CACHE_FILE, json.dumps([int(aid) for aid in aid_cache]).encode("utf-8"))

    async def delete_aid_cache(self) -> None:
        await self._remove(_AID_CACHE_FILE)

    async def load_pairing(self, pairing_id: uuid.UUID) -> Pairing:
        return Pairing.from_bytes(await self._read(self._pairing_key(pairing_id)))

    async def save_pairing(self, pairing: Pairing) -> None:
        await self._write(self._pairing_key(pairing.id), pairing.to_bytes())

    async def delete_pairing(self, pairing_id: uuid.UUID) -> None:
        await self._remove(self._pairing_key(pairing_id))

    async def list_pairings(self) -> list[Pairing]:
        pairings = []
        for path in await self._list(_PAIRINGS_DIR):
            data = await asyncio.to_thread(path.read_bytes)
            pairings.append(Pairing.from_bytes(data))
        return pairings

    async def count_pairings(self) -> int:
        return len(await self._list(_PAIRINGS_DIR))

    async def load_bytes(self, key: str) -> bytes:
        return await self._read(f"{_MISC_DIR}/{key}")

    async def save_bytes(self, key: str, value: bytes) -> None:
        await self._write(f"{_MISC_DIR}/{key}", value)

    async def delete_bytes(self, key: str) -> None:
        await self._remove(f"{_MISC_DIR}/{key}")