"""
Vault Sync Engine -- fits a vault into a tiny synced store, reliably.

This is the command center. A session owns one vault's diff baseline
and serializes every operation on it.

    save:  backup locally -> quota -> diff? -> tier -> chunk -> write -> verify -> sweep
    load:  read -> verify -> expand -> apply diff -> (backup on failure)

Every recoverable failure becomes a structured result. The caller
sees success, success via local fallback, or an error code, never an
exception, except for ChunkBudgetError, which no fallback can fix.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Optional

from .. import VAULT_HOME
from ..config import VaultConfig, load_config
from ..models import VaultItem, copy_vault, dump_vault, find_duplicate_ids
from .backends import StorageArea, create_storage_areas, item_size
from .chunker import join_chunks, split_into_chunks
from .codec import decode_text, decompress, encode_vault, expand
from .diff import apply_diff, compute_diff, decode_diff, encode_diff, reproduces
from .errors import (
    QuotaExceededError,
    ReadCorruptionError,
    WriteFailureError,
    is_throttle_error,
)
from .integrity import checksum_matches, verify_checksum
from .migration import migrate_from_legacy
from .models import (
    LoadResult,
    MigrationResult,
    QuotaStatus,
    StorageErrorCode,
    StorageMeta,
    StorageReport,
    StorageResult,
    WarningLevel,
)
from .quota import QuotaAccountant, parse_meta
from .recovery import needs_recovery, recover_vault_sync
from .retry import backoff_delay, retry_async
from .settings import SettingsStore
from .tiers import negotiate_tier

logger = logging.getLogger("tabvault.sync.engine")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_retryable_write(exc: BaseException) -> bool:
    return is_throttle_error(exc) or isinstance(exc, WriteFailureError)


class VaultSession:
    """One vault's connection to its sync and local storage areas.

    The session holds the only cross-call state: the last full
    snapshot known to be in the sync area (the diff base) and the
    latest saved or loaded snapshot. Both change only after an
    operation fully succeeds.

    Operations on one session never interleave: each public coroutine
    takes the session lock. Two sessions over the same storage areas
    are not coordinated; use one session per vault.
    """

    def __init__(
        self,
        sync_area: StorageArea,
        local_area: StorageArea,
        config: Optional[VaultConfig] = None,
        settings: Optional[SettingsStore] = None,
    ):
        self.sync_area = sync_area
        self.local_area = local_area
        self.config = config or VaultConfig()
        self.settings = settings or SettingsStore(local_area, sync_area, self.config)
        self.quota = QuotaAccountant(sync_area, self.config, local_area)

        self._base_snapshot: Optional[list[VaultItem]] = None
        self._base_checksum: Optional[str] = None
        self._previous: Optional[list[VaultItem]] = None
        self._lock = asyncio.Lock()

    @classmethod
    def open(cls, home: Optional[Path] = None) -> "VaultSession":
        """Open a session on the file-backed areas under ``home``."""
        home_path = (home or Path(VAULT_HOME)).expanduser()
        config = load_config(home_path)
        sync_area, local_area = create_storage_areas(home_path, config)
        return cls(sync_area, local_area, config)

    @property
    def previous_snapshot(self) -> Optional[list[VaultItem]]:
        """Copy of the latest snapshot saved or loaded, or None."""
        if self._previous is None:
            return None
        return copy_vault(self._previous)

    def _set_baseline(
        self,
        base: list[VaultItem],
        checksum: str,
        latest: list[VaultItem],
    ) -> None:
        self._base_snapshot = copy_vault(base)
        self._base_checksum = checksum
        self._previous = copy_vault(latest)

    def _reset_baseline(self) -> None:
        self._base_snapshot = None
        self._base_checksum = None
        self._previous = None

    async def _sync_enabled(self, sync_enabled: Optional[bool]) -> bool:
        if sync_enabled is not None:
            return sync_enabled
        return await self.settings.is_sync_enabled()

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save_vault(
        self, vault: list[VaultItem], sync_enabled: Optional[bool] = None
    ) -> StorageResult:
        """Persist a snapshot.

        Args:
            vault: The full snapshot. Ids must be unique, nested ones included.
            sync_enabled: Override the persisted sync setting.

        Returns:
            StorageResult. ``fallback_to_local`` means the data only
            reached the local area and sync should be shown as off.

        Raises:
            ValueError: The snapshot contains duplicate ids.
            ChunkBudgetError: The per-item budget cannot hold one character.
        """
        duplicates = find_duplicate_ids(vault)
        if duplicates:
            raise ValueError(f"Duplicate vault ids: {', '.join(duplicates)}")
        async with self._lock:
            return await self._save(vault, sync_enabled)

    async def _save(
        self, vault: list[VaultItem], sync_enabled: Optional[bool] = None
    ) -> StorageResult:
        cfg = self.config
        data = dump_vault(vault)

        if not await self._sync_enabled(sync_enabled):
            try:
                await self.local_area.set({cfg.legacy_key: data, cfg.backup_key: data})
            except Exception as exc:
                logger.error("Local vault save failed: %s", exc)
                return StorageResult(success=False, error=StorageErrorCode.SYNC_FAILED)
            return StorageResult(success=True)

        try:
            await self.local_area.set({cfg.backup_key: data})
        except Exception as exc:
            logger.error("Local backup write failed, not touching sync: %s", exc)
            return StorageResult(success=False, error=StorageErrorCode.SYNC_FAILED)

        try:
            quota = await self.quota.get_quota()
            current_keys = await self.quota.get_vault_keys()
            current_bytes = (
                await self.sync_area.get_bytes_in_use(current_keys)
                if current_keys else 0
            )
        except Exception as exc:
            logger.error("Could not measure sync quota: %s", exc)
            return await self._fallback_to_local(data, StorageErrorCode.SYNC_FAILED)

        diff_result = await self._try_diff_save(vault, quota)
        if diff_result is not None:
            return diff_result

        budget = quota.available + current_bytes - cfg.meta_reserve_bytes
        try:
            choice = negotiate_tier(vault, budget, cfg)
        except QuotaExceededError as exc:
            logger.warning("Vault does not fit sync quota: %s", exc)
            return await self._fallback_to_local(
                data, StorageErrorCode.QUOTA_EXCEEDED, quota
            )

        chunks, chunk_keys = split_into_chunks(choice.payload.compressed, cfg)
        meta = StorageMeta(
            version=cfg.storage_version,
            chunk_count=len(chunks),
            chunk_keys=chunk_keys,
            checksum=choice.payload.checksum,
            payload_checksum=choice.payload.payload_checksum,
            timestamp=_now_ms(),
            compressed=True,
            minified=choice.payload.minified,
            domain_dedup=choice.payload.domain_dedup,
            compression_tier=choice.tier,
        )
        items: dict[str, Any] = dict(zip(chunk_keys, chunks))
        items[cfg.meta_key] = meta.model_dump(by_alias=True, mode="json")

        try:
            await retry_async(
                lambda: self._write_and_verify(items, meta),
                max_retries=cfg.max_retries,
                initial_delay=cfg.initial_backoff_seconds,
                should_retry=_is_retryable_write,
                label="vault write",
            )
        except Exception as exc:
            logger.error("Vault sync write failed: %s", exc)
            return await self._fallback_to_local(data, StorageErrorCode.SYNC_FAILED, quota)

        stale = [
            key for key in current_keys
            if key != cfg.meta_key and key not in chunk_keys
        ]
        if stale:
            try:
                await self.sync_area.remove(stale)
            except Exception as exc:
                logger.warning("Could not remove %d stale key(s): %s", len(stale), exc)

        self._set_baseline(vault, meta.checksum, vault)
        logger.info(
            "Vault saved: %d item(s), %d chunk(s), tier %s%s",
            len(vault), len(chunks), choice.tier.value,
            ", domain table" if meta.domain_dedup else "",
        )
        return await self._success(compression_tier=choice.tier)

    async def _write_and_verify(self, items: dict[str, Any], meta: StorageMeta) -> None:
        """Write meta and chunks, then read everything back and re-check it.

        Raises:
            WriteFailureError: The read-back does not match what was written.
        """
        cfg = self.config
        await self.sync_area.set(items)

        stored = await self.sync_area.get([cfg.meta_key, *meta.chunk_keys])
        stored_meta = parse_meta(stored.get(cfg.meta_key))
        if stored_meta is None or stored_meta.checksum != meta.checksum:
            raise WriteFailureError("Meta read-back does not match")

        chunks = [stored.get(key) for key in meta.chunk_keys]
        if not all(isinstance(chunk, str) for chunk in chunks):
            raise WriteFailureError("Chunk missing after write")
        joined = join_chunks(chunks)
        if meta.payload_checksum is not None and not checksum_matches(
            joined, meta.payload_checksum
        ):
            raise WriteFailureError("Written chunks fail their checksum")
        try:
            text = decompress(joined)
        except ReadCorruptionError as exc:
            raise WriteFailureError(f"Written data does not decompress: {exc}") from exc
        if not checksum_matches(text, meta.checksum):
            raise WriteFailureError("Written data fails its checksum")

    async def _try_diff_save(
        self, vault: list[VaultItem], quota: QuotaStatus
    ) -> Optional[StorageResult]:
        """Write a diff instead of a full payload when it is much smaller.

        Returns None whenever the full path should run instead.
        """
        cfg = self.config
        if self._base_snapshot is None or self._base_checksum is None:
            return None

        diff = compute_diff(self._base_snapshot, vault)
        if diff.is_empty or not reproduces(self._base_snapshot, vault, diff):
            return None

        try:
            stored = await self.sync_area.get([cfg.meta_key, cfg.diff_key])
        except Exception as exc:
            logger.warning("Could not read meta for diff save: %s", exc)
            return None
        meta = parse_meta(stored.get(cfg.meta_key))
        if meta is None or meta.checksum != self._base_checksum:
            logger.info("Sync area moved past our baseline, doing a full save")
            return None

        value = encode_diff(diff, self._base_checksum).model_dump(by_alias=True)
        diff_size = item_size(cfg.diff_key, value)
        full_size = encode_vault(vault, minified=True, config=cfg).size
        existing = (
            item_size(cfg.diff_key, stored[cfg.diff_key])
            if cfg.diff_key in stored else 0
        )
        if (
            diff_size >= full_size * cfg.diff_ratio_threshold
            or diff_size > cfg.quota_bytes_per_item
            or diff_size - existing > quota.available
        ):
            logger.debug("Diff of %d bytes not worth it (full %d)", diff_size, full_size)
            return None

        try:
            await retry_async(
                lambda: self._write_and_verify_diff(value),
                max_retries=cfg.max_retries,
                initial_delay=cfg.initial_backoff_seconds,
                should_retry=_is_retryable_write,
                label="vault diff write",
            )
        except Exception as exc:
            logger.warning("Diff write failed, doing a full save: %s", exc)
            return None

        self._previous = copy_vault(vault)
        logger.info(
            "Vault saved as diff: +%d / -%d item(s), %d bytes",
            len(diff.added), len(diff.deleted), diff_size,
        )
        return await self._success(used_diff=True)

    async def _write_and_verify_diff(self, value: dict[str, Any]) -> None:
        cfg = self.config
        await self.sync_area.set({cfg.diff_key: value})
        stored = await self.sync_area.get(cfg.diff_key)
        try:
            decode_diff(stored.get(cfg.diff_key))
        except ReadCorruptionError as exc:
            raise WriteFailureError(f"Diff read-back failed: {exc}") from exc

    async def _success(self, **fields: Any) -> StorageResult:
        try:
            quota = await self.quota.get_quota()
        except Exception as exc:
            logger.warning("Could not refresh quota after save: %s", exc)
            return StorageResult(success=True, **fields)
        return StorageResult(
            success=True,
            bytes_used=quota.used,
            bytes_available=quota.available,
            warning_level=quota.warning_level,
            **fields,
        )

    async def _fallback_to_local(
        self,
        data: list[dict[str, Any]],
        error: StorageErrorCode,
        quota: Optional[QuotaStatus] = None,
    ) -> StorageResult:
        """Keep the vault in the local area only and report it."""
        cfg = self.config
        try:
            await self.local_area.set({cfg.legacy_key: data, cfg.backup_key: data})
        except Exception as exc:
            logger.error("Local fallback write failed: %s", exc)
            return StorageResult(success=False, error=StorageErrorCode.SYNC_FAILED)

        logger.warning("Vault kept in local storage only (%s)", error.value)
        return StorageResult(
            success=True,
            fallback_to_local=True,
            error=error,
            bytes_used=quota.used if quota else None,
            bytes_available=quota.available if quota else None,
            warning_level=WarningLevel.CRITICAL,
        )

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load_vault(self, sync_enabled: Optional[bool] = None) -> LoadResult:
        """Load the vault, falling back to the local backup on any corruption."""
        async with self._lock:
            return await self._load(sync_enabled)

    async def _load(self, sync_enabled: Optional[bool] = None) -> LoadResult:
        cfg = self.config
        if not await self._sync_enabled(sync_enabled):
            try:
                local = await self.local_area.get([cfg.legacy_key, cfg.backup_key])
            except Exception as exc:
                logger.error("Local vault unreadable: %s", exc)
                return LoadResult(error=StorageErrorCode.READ_CORRUPTION)
            value = local.get(cfg.legacy_key, local.get(cfg.backup_key))
            return LoadResult(vault=self._parse_local(value))

        try:
            stored = await self.sync_area.get(None)
            if cfg.meta_key not in stored:
                return await self._load_without_meta()
            return self._read_remote(stored)
        except ReadCorruptionError as exc:
            logger.warning("Vault sync data unusable: %s", exc)
        except Exception as exc:
            logger.warning("Vault sync read failed: %s", exc)
        return await self._load_backup(StorageErrorCode.READ_CORRUPTION)

    def _read_remote(self, stored: dict[str, Any]) -> LoadResult:
        cfg = self.config
        meta = parse_meta(stored.get(cfg.meta_key))
        if meta is None:
            raise ReadCorruptionError("Vault meta is malformed")
        if meta.version > cfg.storage_version:
            raise ReadCorruptionError(
                f"Vault format {meta.version} is newer than {cfg.storage_version}"
            )

        chunks = []
        for key in meta.chunk_keys:
            chunk = stored.get(key)
            if not isinstance(chunk, str):
                raise ReadCorruptionError(f"Missing chunk {key}")
            chunks.append(chunk)

        joined = join_chunks(chunks)
        if meta.payload_checksum is not None:
            verify_checksum(joined, meta.payload_checksum, "vault chunks")
        text = decompress(joined)
        verify_checksum(text, meta.checksum, "vault")
        base = decode_text(text)

        vault, timestamp = base, meta.timestamp
        if cfg.diff_key in stored:
            diff, base_checksum = decode_diff(stored[cfg.diff_key])
            if base_checksum == meta.checksum:
                vault = apply_diff(base, diff)
                timestamp = max(timestamp, diff.timestamp)
            else:
                logger.warning("Ignoring stale vault diff")

        self._set_baseline(base, meta.checksum, vault)
        return LoadResult(vault=vault, timestamp=timestamp)

    async def _load_without_meta(self) -> LoadResult:
        """No meta in the sync area: empty vault, or missing remote state."""
        cfg = self.config
        local = await self.local_area.get(cfg.backup_key)
        backup = self._parse_local(local.get(cfg.backup_key))
        if backup:
            logger.warning("Vault meta missing from sync, using local backup")
            return LoadResult(
                vault=backup,
                fallback_to_local=True,
                error=StorageErrorCode.READ_CORRUPTION,
            )
        return LoadResult()

    async def _load_backup(self, error: StorageErrorCode) -> LoadResult:
        cfg = self.config
        try:
            local = await self.local_area.get(cfg.backup_key)
        except Exception as exc:
            logger.error("Local backup unreadable: %s", exc)
            local = {}
        logger.warning("Loading vault from local backup")
        return LoadResult(
            vault=self._parse_local(local.get(cfg.backup_key)),
            fallback_to_local=True,
            error=error,
        )

    def _parse_local(self, value: Any) -> list[VaultItem]:
        if not value:
            return []
        try:
            return expand(value)
        except ReadCorruptionError as exc:
            logger.error("Local vault copy is unreadable: %s", exc)
            return []

    async def load_vault_with_retry(
        self, sync_enabled: Optional[bool] = None
    ) -> LoadResult:
        """Load, retrying fallback results with exponential backoff.

        A fallback that survives every attempt is returned as is.
        """
        cfg = self.config
        attempts = max(cfg.load_max_retries, 1)
        result = await self.load_vault(sync_enabled)
        for attempt in range(attempts - 1):
            if not result.fallback_to_local:
                break
            delay = backoff_delay(cfg.initial_backoff_seconds, attempt)
            logger.info("Vault load fell back, retrying in %.1fs", delay)
            await asyncio.sleep(delay)
            result = await self.load_vault(sync_enabled)
        return result

    async def remote_timestamp(self) -> Optional[int]:
        """Timestamp of the newest remote write, or None if there is none."""
        cfg = self.config
        stored = await self.sync_area.get([cfg.meta_key, cfg.diff_key])
        meta = parse_meta(stored.get(cfg.meta_key))
        if meta is None:
            return None
        timestamp = meta.timestamp
        if cfg.diff_key in stored:
            try:
                diff, base_checksum = decode_diff(stored[cfg.diff_key])
            except ReadCorruptionError:
                return timestamp
            if base_checksum == meta.checksum:
                timestamp = max(timestamp, diff.timestamp)
        return timestamp

    async def load_if_newer(self, since: int) -> Optional[LoadResult]:
        """Reload only when the sync area holds something newer than ``since``."""
        timestamp = await self.remote_timestamp()
        if timestamp is None or timestamp <= since:
            return None
        return await self.load_vault(sync_enabled=True)

    # ------------------------------------------------------------------
    # Sync mode, recovery, migration
    # ------------------------------------------------------------------

    async def clear_remote(self) -> list[str]:
        """Remove every vault key from the sync area. Returns what was removed."""
        cfg = self.config
        everything = await self.sync_area.get(None)
        keys = [
            key for key in everything
            if key in (cfg.meta_key, cfg.diff_key) or key.startswith(cfg.chunk_prefix)
        ]
        if keys:
            await self.sync_area.remove(keys)
        return keys

    async def toggle_sync_mode(self, vault: list[VaultItem], enable: bool) -> StorageResult:
        """Move the vault into or out of the sync area."""
        if not enable:
            return await self.disable_vault_sync(vault)

        async with self._lock:
            result = await self._save(vault, sync_enabled=True)
            if result.success and not result.fallback_to_local:
                try:
                    await self.local_area.remove(self.config.legacy_key)
                except Exception as exc:
                    logger.warning("Could not remove local vault copy: %s", exc)
                await self.settings.set_sync_enabled(True)
            return result

    async def disable_vault_sync(self, vault: list[VaultItem]) -> StorageResult:
        """Keep the vault locally and clear it from the sync area."""
        cfg = self.config
        data = dump_vault(vault)
        async with self._lock:
            try:
                await self.local_area.set({cfg.legacy_key: data, cfg.backup_key: data})
            except Exception as exc:
                logger.error("Could not write vault locally: %s", exc)
                return StorageResult(success=False, error=StorageErrorCode.SYNC_FAILED)

            try:
                removed = await self.clear_remote()
                logger.info("Cleared %d vault key(s) from sync", len(removed))
            except Exception as exc:
                logger.warning("Could not clear vault from sync: %s", exc)
            self._reset_baseline()

            try:
                await self.settings.set_sync_enabled(False)
            except Exception as exc:
                logger.warning("Could not persist sync setting: %s", exc)
            return StorageResult(success=True, sync_disabled=True)

    async def recover_vault_sync(
        self, vault: Optional[list[VaultItem]] = None
    ) -> StorageResult:
        """Hard-reset the sync area and rewrite it from a good snapshot."""
        async with self._lock:
            return await recover_vault_sync(self, vault)

    async def attempt_self_healing(
        self, load_result: LoadResult
    ) -> Optional[StorageResult]:
        """Recover when a load fell back while sync is supposed to be on."""
        if not await needs_recovery(self, load_result):
            return None
        return await self.recover_vault_sync(load_result.vault)

    async def migrate_from_legacy(self) -> MigrationResult:
        """Convert legacy layouts to the current chunked format, once."""
        async with self._lock:
            return await migrate_from_legacy(self)

    async def get_quota(self) -> QuotaStatus:
        return await self.quota.get_quota()

    async def get_storage_report(self) -> StorageReport:
        return await self.quota.get_storage_report()

    async def cleanup_orphaned_chunks(self) -> int:
        async with self._lock:
            return await self.quota.cleanup_orphaned_chunks()
