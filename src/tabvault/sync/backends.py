"""
Storage areas -- the key-value stores the vault lives in.

The sync area is small and quota-bound: a total byte budget, a
per-item byte budget and a write-rate limit. The local area has the
same interface and no meaningful limits; it holds the backup.

Memory: in-process dict. Used by tests and embedders.
File: the same semantics persisted to one JSON file.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from ..config import VaultConfig
from .errors import StorageAreaError

logger = logging.getLogger("tabvault.sync.backends")

Keys = Optional[Union[str, Iterable[str]]]


def encoded_size(value: Any) -> int:
    """UTF-8 byte length of a value's compact JSON encoding."""
    return len(
        json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    )


def item_size(key: str, value: Any) -> int:
    """Bytes one stored item counts against a quota: key plus JSON value."""
    return len(key.encode("utf-8")) + encoded_size(value)


def _normalize_keys(keys: Keys) -> Optional[list[str]]:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class StorageArea(ABC):
    """Abstract async key-value store."""

    @abstractmethod
    async def get(self, keys: Keys = None) -> dict[str, Any]:
        """Read items.

        Args:
            keys: One key, several keys, or None for everything.

        Returns:
            Mapping of the requested keys that exist to their values.
        """

    @abstractmethod
    async def set(self, items: dict[str, Any]) -> None:
        """Write items as one operation.

        Raises:
            StorageAreaError: Quota exhausted or writes throttled.
        """

    @abstractmethod
    async def remove(self, keys: Keys) -> None:
        """Delete items. Missing keys are ignored."""

    @abstractmethod
    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        """Bytes used by the given keys, or by everything when None."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable area name."""


class MemoryStorageArea(StorageArea):
    """Dict-backed storage area with optional quota enforcement.

    A write that would push any item over ``quota_bytes_per_item`` or
    the area over ``quota_bytes`` is rejected whole. Once
    ``max_write_operations`` writes have happened, further writes are
    throttled.
    """

    def __init__(
        self,
        quota_bytes: Optional[int] = None,
        quota_bytes_per_item: Optional[int] = None,
        max_write_operations: Optional[int] = None,
        area_name: str = "memory",
    ):
        self.quota_bytes = quota_bytes
        self.quota_bytes_per_item = quota_bytes_per_item
        self.max_write_operations = max_write_operations
        self.write_count = 0
        self._area_name = area_name
        self._data: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._area_name

    @property
    def data(self) -> dict[str, Any]:
        """Direct view of stored items. Mutating it bypasses quotas."""
        return self._data

    def _count_write(self) -> None:
        if (
            self.max_write_operations is not None
            and self.write_count >= self.max_write_operations
        ):
            raise StorageAreaError(
                f"MAX_WRITE_OPERATIONS_PER_MINUTE exceeded on {self.name}"
            )
        self.write_count += 1

    def _persist(self, data: dict[str, Any]) -> None:
        """Hook for subclasses that keep data outside the process.

        Called with the complete new contents before they replace the
        in-memory state; raising leaves that state untouched.
        """

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        wanted = _normalize_keys(keys)
        if wanted is None:
            return copy.deepcopy(self._data)
        return {
            key: copy.deepcopy(self._data[key])
            for key in wanted
            if key in self._data
        }

    async def set(self, items: dict[str, Any]) -> None:
        self._count_write()

        if self.quota_bytes_per_item is not None:
            for key, value in items.items():
                size = item_size(key, value)
                if size > self.quota_bytes_per_item:
                    raise StorageAreaError(
                        f"QUOTA_BYTES_PER_ITEM quota exceeded: {key} is {size} bytes"
                    )

        if self.quota_bytes is not None:
            projected = dict(self._data)
            projected.update(items)
            total = sum(item_size(k, v) for k, v in projected.items())
            if total > self.quota_bytes:
                raise StorageAreaError(
                    f"QUOTA_BYTES quota exceeded: {total} > {self.quota_bytes}"
                )

        incoming = copy.deepcopy(items)
        self._persist({**self._data, **incoming})
        self._data.update(incoming)

    async def remove(self, keys: Keys) -> None:
        self._count_write()
        doomed = set(_normalize_keys(keys) or [])
        self._persist({k: v for k, v in self._data.items() if k not in doomed})
        for key in doomed:
            self._data.pop(key, None)

    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        wanted = _normalize_keys(keys)
        if wanted is None:
            wanted = list(self._data)
        return sum(
            item_size(key, self._data[key]) for key in wanted if key in self._data
        )


class FileStorageArea(MemoryStorageArea):
    """Storage area persisted to a single JSON file.

    Writes go to a temporary sibling and are renamed into place so a
    crash never leaves a half-written file.
    """

    def __init__(self, path: Path, **kwargs: Any):
        kwargs.setdefault("area_name", path.stem)
        super().__init__(**kwargs)
        self.path = path.expanduser()
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable storage file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Storage file %s is not an object, ignoring", self.path)
            return {}
        return data

    def _persist(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        try:
            tmp.write_text(
                json.dumps(data, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageAreaError(f"Failed to write {self.path}: {exc}") from exc


def create_storage_areas(
    home: Path, config: VaultConfig
) -> tuple[FileStorageArea, FileStorageArea]:
    """Open the file-backed sync and local areas under <home>/storage.

    Args:
        home: Vault home directory.
        config: Supplies the sync area's quotas.

    Returns:
        (sync_area, local_area)
    """
    storage_dir = home.expanduser() / "storage"
    sync_area = FileStorageArea(
        storage_dir / "sync.json",
        quota_bytes=config.sync_quota_bytes,
        quota_bytes_per_item=config.quota_bytes_per_item,
    )
    local_area = FileStorageArea(storage_dir / "local.json")
    return sync_area, local_area
