"""Tests for one-time migration from older vault layouts."""

from __future__ import annotations

import pytest

from tabvault.models import ArchivedGroup, ArchivedTab
from tabvault.sync.backends import MemoryStorageArea
from tabvault.sync.engine import VaultSession
from tabvault.sync.migration import repair_duplicate_ids
from tabvault.sync.models import MigrationSource, StorageErrorCode

LEGACY_RECORDS = [
    {"id": 1, "title": "One", "url": "https://a.com/1", "pinned": True, "windowId": 2},
    {"id": 2, "title": "Two", "url": "https://b.com/2", "savedAt": "2024-05-01T10:00:00Z"},
    {"id": 3, "title": "G", "tabs": [{"id": 4, "url": "https://c.com/x", "muted": True}]},
]


class _UnreadableArea(MemoryStorageArea):
    async def get(self, keys=None):
        raise RuntimeError("area offline")


def _legacy():
    return [dict(r) for r in LEGACY_RECORDS]


class TestRepairDuplicateIds:
    def test_renames_repeats(self):
        vault = [
            ArchivedTab(id="a"),
            ArchivedTab(id="a"),
            ArchivedGroup(id="g", tabs=[ArchivedTab(id="a"), ArchivedTab(id="a-2")]),
        ]
        assert repair_duplicate_ids(vault) == 3
        ids = [vault[0].id, vault[1].id, vault[2].id, vault[2].tabs[0].id, vault[2].tabs[1].id]
        assert len(set(ids)) == 5
        assert ids[:2] == ["a", "a-2"]

    def test_unique_untouched(self, sample_vault):
        assert repair_duplicate_ids(sample_vault) == 0


class TestMigrateFromLegacy:
    """Tests for VaultSession.migrate_from_legacy()."""

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self, session):
        result = await session.migrate_from_legacy()
        assert not result.migrated
        assert result.source is MigrationSource.NONE
        assert result.error is None
        assert result.error_code is None

    @pytest.mark.asyncio
    async def test_sync_legacy_to_chunked(self, session):
        session.sync_area.data["vault"] = _legacy()
        result = await session.migrate_from_legacy()
        assert result.migrated
        assert result.source is MigrationSource.SYNC_LEGACY
        assert result.item_count == 3
        assert "vault" not in session.sync_area.data
        assert session.sync_area.data["vault_meta"]["version"] == 3

        loaded = await VaultSession(session.sync_area, session.local_area, session.config).load_vault()
        one, two, group = loaded.vault
        assert one.id == "1" and one.was_pinned and one.original_id == 1
        assert two.saved_at == 1714557600000
        assert isinstance(group, ArchivedGroup)
        assert group.tabs[0].was_muted

    @pytest.mark.asyncio
    async def test_sync_legacy_too_large_moves_local(self, make_session):
        session = make_session(sync_quota_bytes=10240)
        session.sync_area.data["vault"] = _legacy()
        result = await session.migrate_from_legacy()
        assert result.migrated
        assert result.sync_disabled
        assert result.error
        assert result.error_code is StorageErrorCode.QUOTA_EXCEEDED
        assert "vault" not in session.sync_area.data
        assert len(session.local_area.data["vault"]) == 3
        assert await session.settings.is_sync_enabled() is False

    @pytest.mark.asyncio
    async def test_sync_legacy_with_sync_off(self, session):
        session.local_area.data["vaultSettings"] = {"syncEnabled": False}
        session.sync_area.data["vault"] = _legacy()
        result = await session.migrate_from_legacy()
        assert result.migrated and not result.sync_disabled
        assert "vault" not in session.sync_area.data
        assert len(session.local_area.data["vault"]) == 3
        assert "vault_meta" not in session.sync_area.data

    @pytest.mark.asyncio
    async def test_local_legacy_to_sync(self, session):
        session.local_area.data["vault"] = _legacy()
        result = await session.migrate_from_legacy()
        assert result.migrated
        assert result.source is MigrationSource.LOCAL_LEGACY
        assert "vault" not in session.local_area.data
        assert "vault_meta" in session.sync_area.data

    @pytest.mark.asyncio
    async def test_local_legacy_with_sync_off_stays(self, session):
        session.local_area.data["vaultSettings"] = {"syncEnabled": False}
        session.local_area.data["vault"] = _legacy()
        result = await session.migrate_from_legacy()
        assert not result.migrated
        assert result.source is MigrationSource.LOCAL_LEGACY
        assert session.local_area.data["vault"] == _legacy()

    @pytest.mark.asyncio
    async def test_idempotent(self, session):
        session.sync_area.data["vault"] = _legacy()
        assert (await session.migrate_from_legacy()).migrated
        again = await session.migrate_from_legacy()
        assert not again.migrated
        assert again.source is MigrationSource.NONE

    @pytest.mark.asyncio
    async def test_older_chunked_layout_upgraded(self, session, sample_vault):
        await session.save_vault(sample_vault)
        session.sync_area.data["vault_meta"]["version"] = 2

        result = await session.migrate_from_legacy()
        assert result.migrated
        assert result.source is MigrationSource.SYNC_CHUNKED
        assert session.sync_area.data["vault_meta"]["version"] == 3

    @pytest.mark.asyncio
    async def test_duplicate_ids_repaired(self, session):
        session.sync_area.data["vault"] = [
            {"id": 1, "title": "a", "pinned": False},
            {"id": 1, "title": "b", "pinned": False},
        ]
        result = await session.migrate_from_legacy()
        assert result.migrated
        loaded = await session.load_vault()
        assert [t.id for t in loaded.vault] == ["1", "1-2"]

    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self, local_area, config):
        session = VaultSession(_UnreadableArea(), local_area, config)
        result = await session.migrate_from_legacy()
        assert not result.migrated
        assert "area offline" in result.error
        assert result.error_code is StorageErrorCode.MIGRATION_FAILED

    @pytest.mark.asyncio
    async def test_unreadable_legacy_records(self, session):
        session.sync_area.data["vault"] = ["junk", 5]
        result = await session.migrate_from_legacy()
        assert not result.migrated
        assert result.error_code is StorageErrorCode.MIGRATION_FAILED
        assert result.source is MigrationSource.SYNC_LEGACY
        assert session.sync_area.data["vault"] == ["junk", 5]
        assert "vault_meta" not in session.sync_area.data

    @pytest.mark.asyncio
    async def test_unreadable_chunked_layout(self, session, sample_vault):
        await session.save_vault(sample_vault)
        session.sync_area.data["vault_meta"]["version"] = 2
        del session.sync_area.data["vault_chunk_0"]

        result = await session.migrate_from_legacy()
        assert not result.migrated
        assert result.error_code is StorageErrorCode.MIGRATION_FAILED
        assert result.source is MigrationSource.SYNC_CHUNKED
        assert session.sync_area.data["vault_meta"]["version"] == 2
