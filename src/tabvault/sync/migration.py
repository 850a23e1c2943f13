"""
One-time migration from older vault layouts.

Three older shapes are recognised, checked in this order:

    sync_legacy    whole vault as a plain list under the legacy sync key
    local_legacy   whole vault as a plain list under the legacy local key
    sync_chunked   chunked layout written with an older format version

Records are converted to the archived shape and duplicate ids are
renamed before the first save. A failed step raises MigrationError;
migrate_from_legacy() logs it and reports MIGRATION_FAILED instead of
raising, so the app keeps starting.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Optional

from ..models import ArchivedGroup, VaultItem, dump_vault
from .codec import expand
from .errors import MigrationError, ReadCorruptionError
from .models import MigrationResult, MigrationSource, StorageErrorCode
from .quota import parse_meta

if TYPE_CHECKING:
    from .engine import VaultSession

logger = logging.getLogger("tabvault.sync.migration")


def repair_duplicate_ids(vault: list[VaultItem]) -> int:
    """Rename repeated ids in place so every id is unique.

    Returns:
        int: Number of ids renamed.
    """
    seen: set[str] = set()
    renamed = 0

    def claim(item: Any) -> None:
        nonlocal renamed
        if item.id in seen:
            n = 2
            while f"{item.id}-{n}" in seen:
                n += 1
            item.id = f"{item.id}-{n}"
            renamed += 1
        seen.add(item.id)

    for item in vault:
        claim(item)
        if isinstance(item, ArchivedGroup):
            for tab in item.tabs:
                claim(tab)
    if renamed:
        logger.warning("Renamed %d duplicate vault id(s)", renamed)
    return renamed


@contextmanager
def _step(source: MigrationSource, what: str) -> Iterator[None]:
    """Turn any failure inside the block into a MigrationError."""
    try:
        yield
    except MigrationError:
        raise
    except Exception as exc:
        raise MigrationError(f"{what}: {exc}", source) from exc


def _prepare(records: list[Any], source: MigrationSource) -> list[VaultItem]:
    try:
        vault = expand(records)
    except (ReadCorruptionError, ValueError, TypeError) as exc:
        raise MigrationError(f"Legacy records unreadable: {exc}", source) from exc
    repair_duplicate_ids(vault)
    return vault


async def _migrate_sync_legacy(
    session: "VaultSession", records: list[Any], sync_enabled: bool
) -> MigrationResult:
    cfg = session.config
    source = MigrationSource.SYNC_LEGACY
    vault = _prepare(records, source)

    error_code: Optional[StorageErrorCode] = None
    if sync_enabled:
        with _step(source, "Could not save migrated vault"):
            result = await session._save(vault, sync_enabled=True)
        if result.success and not result.fallback_to_local:
            with _step(source, "Could not remove legacy sync copy"):
                await session.sync_area.remove(cfg.legacy_key)
            logger.info("Migrated %d legacy item(s) from sync", len(vault))
            return MigrationResult(migrated=True, item_count=len(vault), source=source)
        error_code = result.error

    # Keep the data local and stop syncing it
    with _step(source, "Could not move legacy vault to local storage"):
        await session.local_area.set({cfg.legacy_key: dump_vault(vault)})
        await session.sync_area.remove(cfg.legacy_key)
    if not sync_enabled:
        logger.info("Moved %d legacy item(s) from sync to local", len(vault))
        return MigrationResult(migrated=True, item_count=len(vault), source=source)

    with _step(source, "Could not switch sync off"):
        await session.settings.set_sync_enabled(False)
    logger.warning("Legacy vault too large for sync, kept locally with sync off")
    return MigrationResult(
        migrated=True,
        item_count=len(vault),
        source=source,
        error="Vault moved to local storage due to sync quota limits",
        error_code=error_code,
        sync_disabled=True,
    )


async def _migrate_local_legacy(
    session: "VaultSession", records: list[Any], sync_enabled: bool
) -> MigrationResult:
    cfg = session.config
    source = MigrationSource.LOCAL_LEGACY
    vault = _prepare(records, source)
    if not sync_enabled:
        return MigrationResult(item_count=len(vault), source=source)

    with _step(source, "Could not save migrated vault"):
        result = await session._save(vault, sync_enabled=True)
    if result.success and not result.fallback_to_local:
        with _step(source, "Could not remove legacy local copy"):
            await session.local_area.remove(cfg.legacy_key)
        logger.info("Migrated %d local legacy item(s) to sync", len(vault))
        return MigrationResult(migrated=True, item_count=len(vault), source=source)

    with _step(source, "Could not switch sync off"):
        await session.settings.set_sync_enabled(False)
    return MigrationResult(
        item_count=len(vault),
        source=source,
        error="Local vault does not fit sync, sync disabled",
        error_code=result.error,
        sync_disabled=True,
    )


async def _migrate_chunked(session: "VaultSession", version: int) -> MigrationResult:
    source = MigrationSource.SYNC_CHUNKED
    with _step(source, "Could not read chunked vault"):
        loaded = await session._load(sync_enabled=True)
    if loaded.fallback_to_local:
        raise MigrationError(f"Vault format {version} could not be read for upgrade", source)

    vault = loaded.vault
    repair_duplicate_ids(vault)
    with _step(source, "Could not save upgraded vault"):
        result = await session._save(vault, sync_enabled=True)
    if not result.success or result.fallback_to_local:
        raise MigrationError("Upgraded vault could not be written to sync", source)
    logger.info("Upgraded vault from format %d", version)
    return MigrationResult(migrated=True, item_count=len(vault), source=source)


async def _detect_and_migrate(session: "VaultSession") -> MigrationResult:
    cfg = session.config
    with _step(MigrationSource.NONE, "Could not read vault layout"):
        sync_data = await session.sync_area.get([cfg.meta_key, cfg.legacy_key])
    meta = parse_meta(sync_data.get(cfg.meta_key))
    if meta is not None and meta.version == cfg.storage_version:
        return MigrationResult()

    sync_enabled = await session.settings.is_sync_enabled()

    sync_legacy = sync_data.get(cfg.legacy_key)
    if isinstance(sync_legacy, list) and sync_legacy:
        return await _migrate_sync_legacy(session, sync_legacy, sync_enabled)

    if meta is None:
        with _step(MigrationSource.LOCAL_LEGACY, "Could not read local vault"):
            local_data = await session.local_area.get(cfg.legacy_key)
        local_legacy = local_data.get(cfg.legacy_key)
        if isinstance(local_legacy, list) and local_legacy:
            return await _migrate_local_legacy(session, local_legacy, sync_enabled)
        return MigrationResult()

    if meta.version < cfg.storage_version and sync_enabled:
        return await _migrate_chunked(session, meta.version)
    return MigrationResult()


async def migrate_from_legacy(session: "VaultSession") -> MigrationResult:
    """Detect and convert any older layout. Idempotent.

    Call with the session lock held.

    Returns:
        MigrationResult. A failed migration carries ``error_code``
        MIGRATION_FAILED and the source it was working on.
    """
    try:
        return await _detect_and_migrate(session)
    except MigrationError as exc:
        logger.error("Vault migration failed: %s", exc)
        return MigrationResult(
            source=exc.source or MigrationSource.NONE,
            error=str(exc),
            error_code=StorageErrorCode.MIGRATION_FAILED,
        )
