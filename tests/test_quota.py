"""Tests for quota accounting, orphan sweeping and storage health."""

from __future__ import annotations

import pytest

from tabvault.config import VaultConfig
from tabvault.sync.backends import MemoryStorageArea, item_size
from tabvault.sync.models import StorageHealth, WarningLevel
from tabvault.sync.quota import QuotaAccountant, parse_meta, warning_level


class _BrokenArea(MemoryStorageArea):
    async def get_bytes_in_use(self, keys=None):
        raise RuntimeError("backend unavailable")


class TestWarningLevel:
    @pytest.mark.parametrize("pct,expected", [
        (0.0, WarningLevel.NONE),
        (0.79, WarningLevel.NONE),
        (0.80, WarningLevel.WARNING),
        (0.89, WarningLevel.WARNING),
        (0.90, WarningLevel.CRITICAL),
        (1.5, WarningLevel.CRITICAL),
    ])
    def test_thresholds(self, pct, expected):
        assert warning_level(pct, VaultConfig()) is expected


class TestParseMeta:
    def test_absent_or_malformed(self):
        assert parse_meta(None) is None
        assert parse_meta("meta") is None
        assert parse_meta({"version": 3}) is None

    def test_valid(self):
        meta = parse_meta({
            "version": 3,
            "chunkCount": 1,
            "chunkKeys": ["vault_chunk_0"],
            "checksum": "abc",
            "timestamp": 5,
        })
        assert meta.chunk_keys == ["vault_chunk_0"]


class TestGetQuota:
    """Tests for QuotaAccountant.get_quota()."""

    @pytest.mark.asyncio
    async def test_empty_area(self, sync_area, config):
        quota = await QuotaAccountant(sync_area, config).get_quota()
        assert quota.used == 0
        assert quota.total == 102400 - 10240
        assert quota.available == quota.total
        assert quota.warning_level is WarningLevel.NONE

    @pytest.mark.asyncio
    async def test_large_settings_shrink_vault_share(self, config):
        area = MemoryStorageArea()
        await area.set({"appearanceSettings": "x" * 20000})
        quota = await QuotaAccountant(area, config).get_quota()
        assert quota.total == 102400 - item_size("appearanceSettings", "x" * 20000)

    @pytest.mark.asyncio
    async def test_counts_vault_keys_only(self, session, sample_vault, config):
        await session.save_vault(sample_vault)
        await session.sync_area.set({"unrelated": "z" * 100})
        accountant = QuotaAccountant(session.sync_area, config)
        keys = await accountant.get_vault_keys()
        quota = await accountant.get_quota()
        assert quota.used == await session.sync_area.get_bytes_in_use(keys)
        assert "unrelated" not in keys

    @pytest.mark.asyncio
    async def test_critical_when_nearly_full(self, config):
        area = MemoryStorageArea()
        area.data["vault_chunk_0"] = "x" * int(92160 * 0.95)
        quota = await QuotaAccountant(area, config).get_quota()
        assert quota.warning_level is WarningLevel.CRITICAL


class TestVaultKeys:
    """Tests for get_vault_keys()."""

    @pytest.mark.asyncio
    async def test_from_meta(self, session, sample_vault):
        await session.save_vault(sample_vault)
        keys = await session.quota.get_vault_keys()
        assert keys[0] == "vault_meta"
        assert "vault_chunk_0" in keys

    @pytest.mark.asyncio
    async def test_prefix_scan_without_meta(self, config):
        area = MemoryStorageArea()
        area.data.update({"vault_chunk_0": "a", "vault_chunk_1": "b", "other": 1})
        keys = await QuotaAccountant(area, config).get_vault_keys()
        assert sorted(keys) == ["vault_chunk_0", "vault_chunk_1"]

    @pytest.mark.asyncio
    async def test_includes_diff(self, config):
        area = MemoryStorageArea()
        area.data["vault_diff"] = {"payload": "x"}
        assert "vault_diff" in await QuotaAccountant(area, config).get_vault_keys()


class TestOrphans:
    """Tests for orphaned chunk detection and cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_unlisted_chunks(self, session, sample_vault):
        await session.save_vault(sample_vault)
        session.sync_area.data["vault_chunk_40"] = "stale"
        assert await session.quota.find_orphaned_chunks() == ["vault_chunk_40"]
        assert await session.quota.cleanup_orphaned_chunks() == 1
        assert "vault_chunk_40" not in session.sync_area.data
        assert "vault_chunk_0" in session.sync_area.data

    @pytest.mark.asyncio
    async def test_no_meta_means_no_orphans(self, config):
        area = MemoryStorageArea()
        area.data["vault_chunk_3"] = "x"
        accountant = QuotaAccountant(area, config)
        assert await accountant.cleanup_orphaned_chunks() == 0
        assert "vault_chunk_3" in area.data

    @pytest.mark.asyncio
    async def test_cleanup_failure_returns_zero(self, session, sample_vault):
        await session.save_vault(sample_vault)
        session.sync_area.data["vault_chunk_40"] = "stale"
        session.sync_area.max_write_operations = session.sync_area.write_count
        assert await session.quota.cleanup_orphaned_chunks() == 0


class TestHealthAndReport:
    """Tests for storage health and the storage report."""

    @pytest.mark.asyncio
    async def test_healthy_when_empty(self, sync_area, config):
        assert await QuotaAccountant(sync_area, config).get_storage_health() is StorageHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_degraded_on_backend_error(self, config):
        accountant = QuotaAccountant(_BrokenArea(), config)
        assert await accountant.get_storage_health() is StorageHealth.DEGRADED

    @pytest.mark.asyncio
    async def test_critical_when_full(self, config):
        area = MemoryStorageArea()
        area.data["bulk"] = "x" * 95000
        assert await QuotaAccountant(area, config).get_storage_health() is StorageHealth.CRITICAL

    @pytest.mark.asyncio
    async def test_report(self, session, sample_vault):
        await session.save_vault(sample_vault)
        report = await session.get_storage_report()
        assert report.health is StorageHealth.HEALTHY
        assert report.sync_total == 102400
        assert report.sync_used > 0
        assert report.local_used > 0
        assert report.vault_item_count == len(sample_vault)
        assert report.last_sync_time is not None
        assert report.orphaned_chunks == 0
        assert report.quota.used > 0
