"""Tests for the storage areas."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from tabvault.config import VaultConfig
from tabvault.sync.backends import (
    FileStorageArea,
    MemoryStorageArea,
    create_storage_areas,
    encoded_size,
    item_size,
)
from tabvault.sync.errors import StorageAreaError, is_quota_error, is_throttle_error


class TestSizes:
    def test_encoded_size_compact(self):
        assert encoded_size({"a": [1, 2]}) == len('{"a":[1,2]}')

    def test_item_size(self):
        assert item_size("a", "bc") == 5
        assert item_size("é", "é") == 2 + 4


class TestMemoryStorageArea:
    """Tests for the in-memory area."""

    @pytest.mark.asyncio
    async def test_get_set_remove(self):
        area = MemoryStorageArea()
        await area.set({"a": 1, "b": [1, 2]})
        assert await area.get("a") == {"a": 1}
        assert await area.get(["a", "missing"]) == {"a": 1}
        assert await area.get(None) == {"a": 1, "b": [1, 2]}
        await area.remove(["a", "missing"])
        assert await area.get(None) == {"b": [1, 2]}

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        """Mutating a read result never changes stored data."""
        area = MemoryStorageArea()
        await area.set({"k": {"x": [1]}})
        got = await area.get("k")
        got["k"]["x"].append(2)
        assert area.data["k"] == {"x": [1]}

    @pytest.mark.asyncio
    async def test_per_item_quota(self):
        area = MemoryStorageArea(quota_bytes_per_item=50)
        with pytest.raises(StorageAreaError) as exc_info:
            await area.set({"ok": "x", "big": "y" * 100})
        assert is_quota_error(exc_info.value)
        assert area.data == {}

    @pytest.mark.asyncio
    async def test_total_quota(self):
        area = MemoryStorageArea(quota_bytes=100)
        await area.set({"a": "x" * 50})
        with pytest.raises(StorageAreaError) as exc_info:
            await area.set({"b": "x" * 50})
        assert is_quota_error(exc_info.value)
        assert "b" not in area.data

    @pytest.mark.asyncio
    async def test_overwrite_counts_once(self):
        area = MemoryStorageArea(quota_bytes=60)
        await area.set({"a": "x" * 50})
        await area.set({"a": "y" * 50})
        assert area.data["a"] == "y" * 50

    @pytest.mark.asyncio
    async def test_write_throttling(self):
        area = MemoryStorageArea(max_write_operations=1)
        await area.set({"a": 1})
        with pytest.raises(StorageAreaError) as exc_info:
            await area.remove("a")
        assert is_throttle_error(exc_info.value)
        assert area.write_count == 1

    @pytest.mark.asyncio
    async def test_bytes_in_use(self):
        area = MemoryStorageArea()
        await area.set({"a": "bc", "d": 1})
        assert await area.get_bytes_in_use("a") == 5
        assert await area.get_bytes_in_use(None) == 5 + 2
        assert await area.get_bytes_in_use(["missing"]) == 0


class TestFileStorageArea:
    """Tests for the JSON file area."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path):
        path = tmp_path / "storage" / "sync.json"
        area = FileStorageArea(path)
        await area.set({"k": {"v": "café"}})
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": {"v": "café"}}

        reopened = FileStorageArea(path)
        assert await reopened.get("k") == {"k": {"v": "café"}}
        assert not list(path.parent.glob(".*.tmp"))

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path: Path):
        path = tmp_path / "local.json"
        path.write_text("{broken", encoding="utf-8")
        area = FileStorageArea(path)
        assert await area.get(None) == {}

    @pytest.mark.asyncio
    async def test_failed_write_leaves_memory_unchanged(self, tmp_path: Path, monkeypatch):
        """Memory only takes a write once it is on disk."""
        path = tmp_path / "sync.json"
        area = FileStorageArea(path)
        await area.set({"a": 1, "b": 2})

        def _refuse(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", _refuse)
        with pytest.raises(StorageAreaError):
            await area.set({"a": 2})
        with pytest.raises(StorageAreaError):
            await area.remove("b")

        assert await area.get(None) == {"a": 1, "b": 2}
        assert await area.get_bytes_in_use("a") == item_size("a", 1)
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1, "b": 2}

    def test_name_from_file(self, tmp_path: Path):
        assert FileStorageArea(tmp_path / "local.json").name == "local"


class TestCreateStorageAreas:
    def test_layout_and_quotas(self, tmp_vault_home: Path):
        config = VaultConfig(sync_quota_bytes=5000, quota_bytes_per_item=500)
        sync_area, local_area = create_storage_areas(tmp_vault_home, config)
        assert sync_area.path == tmp_vault_home / "storage" / "sync.json"
        assert local_area.path == tmp_vault_home / "storage" / "local.json"
        assert sync_area.quota_bytes == 5000
        assert sync_area.quota_bytes_per_item == 500
        assert local_area.quota_bytes is None
