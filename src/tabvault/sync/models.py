"""
Sync data models -- persisted records and structured results.

Nothing here raises to the caller: the engine reports success,
local fallback or an error code through these models.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field

from ..models import CompressionTier, VaultItem, VaultModel


class WarningLevel(str, Enum):
    """How close the vault is to the sync quota."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


class StorageHealth(str, Enum):
    """Overall health of the sync area."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class StorageErrorCode(str, Enum):
    """Error codes surfaced to the UI layer."""

    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    SYNC_FAILED = "SYNC_FAILED"
    READ_CORRUPTION = "READ_CORRUPTION"
    MIGRATION_FAILED = "MIGRATION_FAILED"


class MigrationSource(str, Enum):
    """Where migrated data came from."""

    NONE = "none"
    SYNC_LEGACY = "sync_legacy"
    LOCAL_LEGACY = "local_legacy"
    SYNC_CHUNKED = "sync_chunked"


class StorageMeta(VaultModel):
    """Describes one full save. Written atomically with its chunks.

    ``chunk_keys`` is always exactly the set of chunk keys present in
    the sync area; anything else under the chunk prefix is an orphan.
    """

    version: int
    chunk_count: int
    chunk_keys: list[str] = Field(default_factory=list)
    checksum: str
    payload_checksum: Optional[str] = None
    timestamp: int
    compressed: bool = True
    minified: bool = False
    domain_dedup: bool = False
    compression_tier: CompressionTier = CompressionTier.FULL


class SnapshotDiff(VaultModel):
    """Delta between two consecutive snapshots.

    Applied on top of the last full save: deletions filtered out,
    additions appended.
    """

    added: list[VaultItem] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    timestamp: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.deleted


class DiffRecord(VaultModel):
    """What is stored under the diff key.

    Attributes:
        payload: Compressed JSON of the SnapshotDiff.
        checksum: SHA-256 of the uncompressed diff JSON.
        base_checksum: Checksum of the full save the diff applies to.
        payload_checksum: SHA-256 of ``payload`` as stored.
    """

    payload: str
    checksum: str
    base_checksum: str
    payload_checksum: Optional[str] = None


class QuotaStatus(VaultModel):
    """Current vault usage against the sync quota. Never cached."""

    used: int = 0
    available: int = 0
    total: int = 0
    percentage: float = 0.0
    warning_level: WarningLevel = WarningLevel.NONE


class VaultSettings(VaultModel):
    """The one setting the engine owns: whether remote sync is on."""

    sync_enabled: bool = True


class StorageResult(VaultModel):
    """Outcome of a save.

    ``success`` with ``fallback_to_local`` means the data is safe in
    the local area only; the caller should reflect that sync is off.
    """

    success: bool
    fallback_to_local: bool = False
    error: Optional[StorageErrorCode] = None
    bytes_used: Optional[int] = None
    bytes_available: Optional[int] = None
    warning_level: Optional[WarningLevel] = None
    compression_tier: Optional[CompressionTier] = None
    used_diff: bool = False
    sync_disabled: bool = False


class LoadResult(VaultModel):
    """Outcome of a load."""

    vault: list[VaultItem] = Field(default_factory=list)
    timestamp: int = 0
    fallback_to_local: bool = False
    error: Optional[StorageErrorCode] = None


class MigrationResult(VaultModel):
    """Outcome of a legacy layout migration."""

    migrated: bool = False
    item_count: int = 0
    source: MigrationSource = MigrationSource.NONE
    error: Optional[str] = None
    error_code: Optional[StorageErrorCode] = None
    sync_disabled: bool = False


class StorageStats(VaultModel):
    """Raw byte counts for both areas."""

    sync_used: int = 0
    sync_total: int = 0
    local_used: int = 0
    vault_item_count: int = 0


class StorageReport(StorageStats):
    """Stats plus health, freshness and orphan count."""

    health: StorageHealth = StorageHealth.HEALTHY
    last_sync_time: Optional[int] = None
    orphaned_chunks: int = 0
    quota: Optional[QuotaStatus] = None
