"""
Snapshot diffs -- small writes for small changes.

A diff records items added since the last full save and ids deleted
from it. It is stored under one key, compressed, with its own
checksum and the checksum of the full save it sits on top of. Only one
diff is ever outstanding; a successful full save clears it.
"""

from __future__ import annotations

import json
import logging
import time

from ..models import VaultItem, copy_vault
from .codec import canonical_json, compress, decompress, expand, minify
from .errors import CodecError, ReadCorruptionError
from .integrity import checksum_matches, compute_checksum, verify_checksum
from .models import DiffRecord, SnapshotDiff

logger = logging.getLogger("tabvault.sync.diff")


def compute_diff(previous: list[VaultItem], current: list[VaultItem]) -> SnapshotDiff:
    """Items in ``current`` but not ``previous`` (by id), and ids gone from it."""
    previous_ids = {item.id for item in previous}
    current_ids = {item.id for item in current}
    return SnapshotDiff(
        added=[item for item in current if item.id not in previous_ids],
        deleted=[item.id for item in previous if item.id not in current_ids],
        timestamp=int(time.time() * 1000),
    )


def apply_diff(base: list[VaultItem], diff: SnapshotDiff) -> list[VaultItem]:
    """Remove deleted ids from ``base`` and append the added items."""
    deleted = set(diff.deleted)
    kept = [item for item in base if item.id not in deleted]
    return kept + copy_vault(diff.added)


def reproduces(
    previous: list[VaultItem], current: list[VaultItem], diff: SnapshotDiff
) -> bool:
    """True when applying ``diff`` to ``previous`` yields exactly ``current``.

    Edits in place and reorders are invisible to an id diff, so those
    snapshots must go through a full save.
    """
    return apply_diff(previous, diff) == current


def encode_diff(diff: SnapshotDiff, base_checksum: str) -> DiffRecord:
    """Compress a diff into the record stored under the diff key."""
    text = canonical_json({
        "added": minify(diff.added, dedup=False),
        "deleted": diff.deleted,
        "timestamp": diff.timestamp,
    })
    payload = compress(text)
    return DiffRecord(
        payload=payload,
        checksum=compute_checksum(text),
        base_checksum=base_checksum,
        payload_checksum=compute_checksum(payload),
    )


def decode_diff(value: object) -> tuple[SnapshotDiff, str]:
    """Decode and verify a stored diff record.

    Returns:
        (diff, base_checksum)

    Raises:
        ReadCorruptionError: The record is malformed or its checksum fails.
    """
    if not isinstance(value, dict):
        raise ReadCorruptionError("Diff record is not an object")
    try:
        record = DiffRecord.model_validate(value)
    except ValueError as exc:
        raise ReadCorruptionError(f"Malformed diff record: {exc}") from exc

    if record.payload_checksum is not None:
        verify_checksum(record.payload, record.payload_checksum, "stored vault diff")
    text = decompress(record.payload)
    if not checksum_matches(text, record.checksum):
        raise ReadCorruptionError("Checksum mismatch for vault diff")

    try:
        data = json.loads(text)
        diff = SnapshotDiff(
            added=expand(data.get("added") or []),
            deleted=[str(i) for i in data.get("deleted") or []],
            timestamp=int(data.get("timestamp") or 0),
        )
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
        raise CodecError(f"Undecodable vault diff: {exc}") from exc
    return diff, record.base_checksum
