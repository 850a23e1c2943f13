"""
Vault settings persistence.

The only setting the storage engine touches is whether remote sync is
enabled. The local copy is authoritative; the sync copy is written
best-effort so other devices see the switch, with the usual backoff
on throttling or quota errors.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import VaultConfig
from .backends import StorageArea
from .errors import is_transient_write_error
from .models import VaultSettings
from .retry import retry_async

logger = logging.getLogger("tabvault.sync.settings")


class SettingsStore:
    """Reads and writes VaultSettings in the local and sync areas."""

    def __init__(
        self,
        local_area: StorageArea,
        sync_area: Optional[StorageArea],
        config: VaultConfig,
    ):
        self.local_area = local_area
        self.sync_area = sync_area
        self.config = config

    async def load(self) -> VaultSettings:
        """Local settings first, then the sync copy, then defaults."""
        key = self.config.settings_key
        for area in (self.local_area, self.sync_area):
            if area is None:
                continue
            try:
                stored = await area.get(key)
            except Exception as exc:
                logger.warning("Could not read settings from %s: %s", area.name, exc)
                continue
            value = stored.get(key)
            if isinstance(value, dict):
                try:
                    return VaultSettings.model_validate(value)
                except ValueError as exc:
                    logger.warning("Ignoring malformed settings in %s: %s", area.name, exc)
        return VaultSettings()

    async def save(self, settings: VaultSettings) -> None:
        """Persist settings locally, then mirror them to the sync area.

        A local failure propagates. A sync failure is logged after
        retries; the local copy already holds the truth.
        """
        key = self.config.settings_key
        value = settings.model_dump(by_alias=True)
        await self.local_area.set({key: value})

        if self.sync_area is None:
            return
        sync_area = self.sync_area
        try:
            await retry_async(
                lambda: sync_area.set({key: value}),
                max_retries=self.config.max_retries,
                initial_delay=self.config.initial_backoff_seconds,
                should_retry=is_transient_write_error,
                label="settings sync",
            )
        except Exception as exc:
            logger.warning("Settings not mirrored to %s: %s", sync_area.name, exc)

    async def is_sync_enabled(self) -> bool:
        return (await self.load()).sync_enabled

    async def set_sync_enabled(self, enabled: bool) -> VaultSettings:
        """Durably switch remote sync on or off."""
        settings = await self.load()
        settings.sync_enabled = enabled
        await self.save(settings)
        logger.info("Vault sync %s", "enabled" if enabled else "disabled")
        return settings
