"""
Vault Sync -- archived tabs in a small, quota-bound synced store.

The vault is compressed, chunked under the per-item limit and written
with a checksum. A smaller diff goes out when only a few items changed.
When nothing fits, fidelity drops a tier at a time; when even that
fails, the vault stays local and the caller is told so.

The local area always holds a backup. Loads fall back to it on any sign
of corruption.
"""

from .engine import VaultSession
from .models import (
    LoadResult,
    MigrationResult,
    QuotaStatus,
    StorageErrorCode,
    StorageResult,
)

__all__ = [
    "LoadResult",
    "MigrationResult",
    "QuotaStatus",
    "StorageErrorCode",
    "StorageResult",
    "VaultSession",
]
