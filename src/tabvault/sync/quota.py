"""
Quota accounting for the sync area.

Measures what the vault actually occupies, against the total budget
minus what application settings hold (or a reserve floor, whichever
is larger). Purely advisory and recomputed on every call: other
writers share the same quota.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..config import VaultConfig
from .backends import StorageArea
from .models import (
    QuotaStatus,
    StorageHealth,
    StorageMeta,
    StorageReport,
    StorageStats,
    WarningLevel,
)

logger = logging.getLogger("tabvault.sync.quota")


def warning_level(percentage: float, config: VaultConfig) -> WarningLevel:
    """Classify a usage ratio against the configured thresholds."""
    if percentage >= config.critical_threshold:
        return WarningLevel.CRITICAL
    if percentage >= config.warning_threshold:
        return WarningLevel.WARNING
    return WarningLevel.NONE


def parse_meta(value: Any) -> Optional[StorageMeta]:
    """Validate a stored meta value, or None if it is absent or unusable."""
    if not isinstance(value, dict):
        return None
    try:
        return StorageMeta.model_validate(value)
    except ValueError as exc:
        logger.warning("Ignoring malformed vault meta: %s", exc)
        return None


class QuotaAccountant:
    """Reports vault usage of a sync area. Never writes except to sweep orphans."""

    def __init__(
        self,
        sync_area: StorageArea,
        config: VaultConfig,
        local_area: Optional[StorageArea] = None,
    ):
        self.sync_area = sync_area
        self.local_area = local_area
        self.config = config

    async def get_vault_keys(self) -> list[str]:
        """All vault-related keys currently in the sync area.

        Uses the meta's chunk list when meta is readable, otherwise
        falls back to scanning for the chunk prefix.
        """
        cfg = self.config
        stored = await self.sync_area.get([cfg.meta_key, cfg.diff_key])
        meta_value = stored.get(cfg.meta_key)

        keys: list[str]
        if isinstance(meta_value, dict) and isinstance(meta_value.get("chunkKeys"), list):
            keys = [cfg.meta_key, *meta_value["chunkKeys"]]
        else:
            everything = await self.sync_area.get(None)
            keys = [
                key
                for key in everything
                if key == cfg.meta_key or key.startswith(cfg.chunk_prefix)
            ]
        if cfg.diff_key in stored:
            keys.append(cfg.diff_key)
        return keys

    async def get_quota(self) -> QuotaStatus:
        """Current vault usage against the vault's share of the quota."""
        cfg = self.config
        settings_bytes = await self.sync_area.get_bytes_in_use(cfg.settings_keys)
        vault_keys = await self.get_vault_keys()
        vault_bytes = (
            await self.sync_area.get_bytes_in_use(vault_keys) if vault_keys else 0
        )

        settings_total = max(settings_bytes, cfg.settings_reserve_bytes)
        total = cfg.sync_quota_bytes - settings_total
        percentage = vault_bytes / total if total > 0 else 1.0

        return QuotaStatus(
            used=vault_bytes,
            available=total - vault_bytes,
            total=total,
            percentage=percentage,
            warning_level=warning_level(percentage, cfg),
        )

    async def find_orphaned_chunks(self) -> list[str]:
        """Chunk keys present in the sync area but not listed in meta."""
        cfg = self.config
        everything = await self.sync_area.get(None)
        meta = parse_meta(everything.get(cfg.meta_key))
        if meta is None:
            return []
        listed = set(meta.chunk_keys)
        return sorted(
            key
            for key in everything
            if key.startswith(cfg.chunk_prefix) and key not in listed
        )

    async def cleanup_orphaned_chunks(self) -> int:
        """Remove orphaned chunk keys.

        Returns:
            int: Keys removed. 0 when there is no meta or removal fails.
        """
        try:
            orphans = await self.find_orphaned_chunks()
            if not orphans:
                return 0
            await self.sync_area.remove(orphans)
        except Exception as exc:
            logger.warning("Orphaned chunk cleanup failed: %s", exc)
            return 0
        logger.info("Removed %d orphaned chunk(s)", len(orphans))
        return len(orphans)

    async def get_storage_stats(self) -> StorageStats:
        """Raw byte counts for both areas and the backed-up item count."""
        cfg = self.config
        sync_used = await self.sync_area.get_bytes_in_use(None)
        local_used = 0
        item_count = 0
        if self.local_area is not None:
            local_used = await self.local_area.get_bytes_in_use(None)
            local = await self.local_area.get([cfg.legacy_key, cfg.backup_key])
            items = local.get(cfg.legacy_key) or local.get(cfg.backup_key) or []
            item_count = len(items) if isinstance(items, list) else 0
        return StorageStats(
            sync_used=sync_used,
            sync_total=cfg.sync_quota_bytes,
            local_used=local_used,
            vault_item_count=item_count,
        )

    async def get_storage_health(self) -> StorageHealth:
        """Health of the whole sync area. Backend errors read as degraded."""
        try:
            used = await self.sync_area.get_bytes_in_use(None)
        except Exception as exc:
            logger.warning("Could not measure sync usage: %s", exc)
            return StorageHealth.DEGRADED
        level = warning_level(used / self.config.sync_quota_bytes, self.config)
        if level is WarningLevel.CRITICAL:
            return StorageHealth.CRITICAL
        if level is WarningLevel.WARNING:
            return StorageHealth.DEGRADED
        return StorageHealth.HEALTHY

    async def get_storage_report(self) -> StorageReport:
        """Everything the status screen shows, in one call."""
        stats = await self.get_storage_stats()
        health = await self.get_storage_health()
        stored = await self.sync_area.get(self.config.meta_key)
        meta = parse_meta(stored.get(self.config.meta_key))
        return StorageReport(
            **stats.model_dump(),
            health=health,
            last_sync_time=meta.timestamp if meta else None,
            orphaned_chunks=len(await self.find_orphaned_chunks()),
            quota=await self.get_quota(),
        )
