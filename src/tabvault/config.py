"""
Vault storage configuration: every limit and key name in one place.

The defaults describe a browser sync area: ~100KB total, ~8KB per item,
a slice reserved for application settings. Override any of them in
<home>/config/vault.yaml.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("tabvault.config")

CONFIG_FILENAME = "vault.yaml"

DEFAULT_SETTINGS_KEYS = [
    "appearanceSettings",
    "dividerPosition",
    "showVault",
    "vaultSyncEnabled",
    "settingsPanelWidth",
    "vaultSettings",
]


class VaultConfig(BaseModel):
    """Limits, thresholds and key layout for the vault storage engine."""

    # Backend ceilings
    sync_quota_bytes: int = 102400
    quota_bytes_per_item: int = 8192
    settings_reserve_bytes: int = 10240
    chunk_overhead_bytes: int = 8
    meta_reserve_bytes: int = 768

    # Quota warning levels, as fractions of the vault's share of the quota
    warning_threshold: float = 0.80
    critical_threshold: float = 0.90

    # Codec
    storage_version: int = 3
    dedup_min_items: int = 3
    dedup_safety_factor: float = 1.2

    # Diff writes are used only below this fraction of a full payload
    diff_ratio_threshold: float = 0.30

    # Retry policy
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    load_max_retries: int = 3

    # Persisted key layout
    meta_key: str = "vault_meta"
    chunk_prefix: str = "vault_chunk_"
    diff_key: str = "vault_diff"
    legacy_key: str = "vault"
    backup_key: str = "vault_backup"
    settings_key: str = "vaultSettings"
    settings_keys: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SETTINGS_KEYS)
    )

    def chunk_key(self, index: int) -> str:
        """Key for the chunk at ``index``."""
        return f"{self.chunk_prefix}{index}"


def load_config(home: Optional[Path] = None) -> VaultConfig:
    """Load vault configuration from <home>/config/vault.yaml.

    Args:
        home: Vault home directory. Defaults are used when None
            or when the file is missing.

    Returns:
        VaultConfig: Parsed config, or defaults on any error.
    """
    if home is None:
        return VaultConfig()

    config_file = home.expanduser() / "config" / CONFIG_FILENAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return VaultConfig(**data)
        except (yaml.YAMLError, ValueError, OSError) as exc:
            logger.warning("Failed to load vault config: %s", exc)
    return VaultConfig()


def save_config(home: Path, config: VaultConfig) -> Path:
    """Persist vault configuration as YAML.

    Args:
        home: Vault home directory.
        config: Configuration to write.

    Returns:
        Path: The written config file.
    """
    config_dir = home.expanduser() / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / CONFIG_FILENAME
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
