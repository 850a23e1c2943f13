"""
Error taxonomy for the vault storage engine.

Everything except ChunkBudgetError is recovered inside the engine and
turned into a structured result. ChunkBudgetError means a backend
constant can no longer be satisfied, so it propagates.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import MigrationSource

QUOTA_MARKERS = ("QUOTA_BYTES", "QUOTA_EXCEEDED")
THROTTLE_MARKERS = ("MAX_WRITE_OPERATIONS", "throttled")


class VaultStorageError(Exception):
    """Base class for vault storage failures."""


class QuotaExceededError(VaultStorageError):
    """No compression tier fits the available sync budget."""


class WriteFailureError(VaultStorageError):
    """The backend rejected or throttled a write, or write-verify failed."""


class ReadCorruptionError(VaultStorageError):
    """Stored data is missing, undecodable or fails its checksum."""


class CodecError(ReadCorruptionError):
    """A payload could not be decompressed or decoded."""


class MigrationError(VaultStorageError):
    """A legacy layout could not be converted.

    Attributes:
        source: The layout being migrated when it failed, if known.
    """

    def __init__(self, message: str, source: Optional["MigrationSource"] = None):
        super().__init__(message)
        self.source = source


class ChunkBudgetError(VaultStorageError):
    """A single character cannot fit the per-item byte budget. Fatal."""


class StorageAreaError(Exception):
    """Raised by a storage area. The message carries a backend marker."""


def is_quota_error(exc: BaseException) -> bool:
    """True when an exception reports total or per-item quota exhaustion."""
    message = str(exc)
    return any(marker in message for marker in QUOTA_MARKERS)


def is_throttle_error(exc: BaseException) -> bool:
    """True when an exception reports write-rate throttling."""
    message = str(exc)
    return any(marker in message for marker in THROTTLE_MARKERS)


def is_transient_write_error(exc: BaseException) -> bool:
    return is_throttle_error(exc) or is_quota_error(exc)
