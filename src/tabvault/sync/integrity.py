"""
Integrity checks for stored vault payloads.

The checksum covers the canonical JSON text *before* compression, in
whichever representation (minified or not) was actually stored. It is
recomputed on every load and immediately after every write.
"""

from __future__ import annotations

import hashlib
import hmac

from .errors import ReadCorruptionError


def compute_checksum(text: str) -> str:
    """SHA-256 hex digest of a UTF-8 encoded string.

    Args:
        text: Canonical JSON payload.

    Returns:
        str: 64-character hex digest.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def checksum_matches(text: str, expected: str) -> bool:
    """Constant-time comparison of a payload against a stored digest."""
    return hmac.compare_digest(compute_checksum(text), expected or "")


def verify_checksum(text: str, expected: str, what: str = "payload") -> None:
    """Raise ReadCorruptionError unless ``text`` hashes to ``expected``.

    Args:
        text: Decompressed payload.
        expected: Digest recorded at save time.
        what: Label for the error message.
    """
    if not checksum_matches(text, expected):
        raise ReadCorruptionError(f"Checksum mismatch for {what}")
