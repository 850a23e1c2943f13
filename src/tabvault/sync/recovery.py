"""
Sync recovery -- rewrite the sync area from a known-good snapshot.

Recovery is a hard reset: every vault key leaves the sync area before
a fresh full save. If even that save falls back, sync is switched off
durably rather than retried forever.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..models import VaultItem
from .models import LoadResult, StorageErrorCode, StorageResult

if TYPE_CHECKING:
    from .engine import VaultSession

logger = logging.getLogger("tabvault.sync.recovery")


async def _best_snapshot(session: "VaultSession") -> list[VaultItem]:
    """The in-memory snapshot if there is one, else the local backup."""
    if session._previous is not None:
        return session.previous_snapshot or []
    cfg = session.config
    local = await session.local_area.get(cfg.backup_key)
    return session._parse_local(local.get(cfg.backup_key))


async def recover_vault_sync(
    session: "VaultSession", vault: Optional[list[VaultItem]] = None
) -> StorageResult:
    """Clear the sync area and save ``vault`` (or the best local copy).

    Call with the session lock held.

    Returns:
        StorageResult of the fresh save. ``sync_disabled`` is set when
        the save could not reach the sync area and sync was turned off.
    """
    if vault is None:
        vault = await _best_snapshot(session)

    try:
        removed = await session.clear_remote()
        logger.info("Recovery cleared %d vault key(s)", len(removed))
    except Exception as exc:
        logger.warning("Recovery could not clear sync area: %s", exc)
    session._reset_baseline()

    result = await session._save(vault, sync_enabled=True)
    if result.success and not result.fallback_to_local:
        logger.info("Vault sync recovered with %d item(s)", len(vault))
        return result

    logger.error("Vault sync recovery failed, disabling sync")
    try:
        await session.settings.set_sync_enabled(False)
    except Exception as exc:
        logger.error("Could not persist sync setting: %s", exc)
        return StorageResult(success=False, error=StorageErrorCode.SYNC_FAILED)
    result.sync_disabled = True
    return result


async def needs_recovery(session: "VaultSession", load_result: LoadResult) -> bool:
    """A load fell back to the local backup while sync is meant to be on."""
    if not load_result.fallback_to_local:
        return False
    return await session.settings.is_sync_enabled()
