"""
Vault codec -- minify, deduplicate and compress archived items.

Three payload shapes exist and expand() tells them apart by sniffing:

    {"domains": [...], "items": [[...], ...]}   domain-deduplicated rows
    [[...], [...]]                              positional rows
    [{...}, {...}]                              named objects (legacy / non-minified)

Positional rows replace field names with a fixed field order:

    tab   = [0, id, originalId, savedAt, title, url, favicon, flags]
    group = [1, id, originalId, savedAt, title, color, collapsed, [tab, ...]]

Absent values are null placeholders; trailing nulls are dropped.
URLs are stored in compact form (see urls.py). With a domain table,
a URL becomes "<table index><path+query+fragment>".
"""

from __future__ import annotations

import base64
import json
import logging
import time
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..config import VaultConfig
from ..models import (
    DEFAULT_GROUP_COLOR,
    ArchivedGroup,
    ArchivedTab,
    VaultItem,
    dump_vault,
    parse_vault,
)
from .backends import encoded_size
from .errors import CodecError
from .integrity import compute_checksum
from .urls import compact_url, expand_url, split_domain

logger = logging.getLogger("tabvault.sync.codec")

KIND_TAB = 0
KIND_GROUP = 1
TAB_WIDTH = 8
GROUP_WIDTH = 8

FLAG_PINNED = 1
FLAG_MUTED = 2
FLAG_FROZEN = 4

# len('{"domains":,"items":}'): what wrapping rows in a table costs.
DEDUP_ENVELOPE_BYTES = 21

LIVE_ONLY_FIELDS = frozenset({
    "active",
    "windowId",
    "index",
    "groupId",
    "discarded",
    "pinned",
    "muted",
    "audible",
    "highlighted",
    "status",
    "openerTabId",
})


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def canonical_json(data: Any) -> str:
    """Compact, deterministic JSON text. This is what gets checksummed."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def compress(text: str) -> str:
    """Compress text into a JSON-safe ASCII string.

    zlib at level 9, then Base85 so the result needs no escaping and
    every character is one byte once stored.
    """
    packed = zlib.compress(text.encode("utf-8"), 9)
    return base64.b85encode(packed).decode("ascii")


def decompress(data: str) -> str:
    """Inverse of compress().

    Raises:
        CodecError: If the data is truncated, altered or not ours.
    """
    try:
        packed = base64.b85decode(data.encode("ascii"))
        return zlib.decompress(packed).decode("utf-8")
    except (ValueError, zlib.error, UnicodeError) as exc:
        raise CodecError(f"Decompression failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Legacy records
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def _saved_at_ms(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return default
    return default


def is_legacy_record(record: dict[str, Any]) -> bool:
    """True for records still shaped like a live browser tab."""
    if any(key in record for key in LIVE_ONLY_FIELDS):
        return True
    if isinstance(record.get("savedAt"), str):
        return True
    return any(is_legacy_record(t) for t in record.get("tabs") or [] if isinstance(t, dict))


def migrate_legacy_record(record: dict[str, Any], now: Optional[int] = None) -> dict[str, Any]:
    """Convert a live-tab-shaped record into the archived shape.

    Live-only fields are dropped; pinned/muted/discarded become
    restoration hints. The live id is kept as ``originalId``.

    Args:
        record: Legacy tab or group dict.
        now: Fallback archive time in epoch ms.

    Returns:
        dict: Record that validates as ArchivedTab or ArchivedGroup.
    """
    now = _now_ms() if now is None else now
    out = {k: v for k, v in record.items() if k not in LIVE_ONLY_FIELDS}

    if "pinned" in record:
        out.setdefault("wasPinned", bool(record["pinned"]))
    if "muted" in record:
        out.setdefault("wasMuted", bool(record["muted"]))
    if "discarded" in record:
        out.setdefault("wasFrozen", bool(record["discarded"]))

    out.setdefault("originalId", record.get("id"))
    out["savedAt"] = _saved_at_ms(record.get("savedAt"), now)
    if out.get("id") is None:
        out["id"] = f"vault-{uuid.uuid4().hex[:12]}"

    if "tabs" in record:
        out["tabs"] = [
            migrate_legacy_record(tab, now)
            for tab in record.get("tabs") or []
            if isinstance(tab, dict)
        ]
    if out.get("favicon") is None:
        out["favicon"] = ""
    return out


# ---------------------------------------------------------------------------
# Positional rows
# ---------------------------------------------------------------------------


def _trim(row: list[Any]) -> list[Any]:
    while row and row[-1] is None:
        row.pop()
    return row


def _pad(row: list[Any], width: int) -> list[Any]:
    return row + [None] * (width - len(row))


def _or_none(value: Any) -> Any:
    return value if value else None


def _tab_flags(tab: ArchivedTab) -> Optional[int]:
    flags = 0
    if tab.was_pinned:
        flags |= FLAG_PINNED
    if tab.was_muted:
        flags |= FLAG_MUTED
    if tab.was_frozen:
        flags |= FLAG_FROZEN
    return flags or None


def _minify_tab(tab: ArchivedTab, encode_url: Callable[[str], str]) -> list[Any]:
    return _trim([
        KIND_TAB,
        tab.id,
        tab.original_id,
        tab.saved_at or None,
        _or_none(tab.title),
        _or_none(encode_url(tab.url)),
        _or_none(tab.favicon),
        _tab_flags(tab),
    ])


def _minify_item(item: VaultItem, encode_url: Callable[[str], str]) -> list[Any]:
    if isinstance(item, ArchivedGroup):
        return _trim([
            KIND_GROUP,
            item.id,
            item.original_id,
            item.saved_at or None,
            _or_none(item.title),
            None if item.color == DEFAULT_GROUP_COLOR else item.color,
            1 if item.collapsed else None,
            [_minify_tab(tab, encode_url) for tab in item.tabs] or None,
        ])
    return _minify_tab(item, encode_url)


def _expand_tab(row: list[Any], decode_url: Callable[[str], str]) -> ArchivedTab:
    _, id_, original_id, saved_at, title, url, favicon, flags = _pad(row, TAB_WIDTH)
    flags = flags or 0
    return ArchivedTab(
        id=id_,
        original_id=original_id,
        saved_at=saved_at or 0,
        title=title or "",
        url=decode_url(url) if url else "",
        favicon=favicon or "",
        was_pinned=bool(flags & FLAG_PINNED),
        was_muted=bool(flags & FLAG_MUTED),
        was_frozen=bool(flags & FLAG_FROZEN),
    )


def _expand_row(row: Any, decode_url: Callable[[str], str]) -> VaultItem:
    if not isinstance(row, list) or len(row) < 2:
        raise CodecError(f"Malformed row: {row!r}")
    kind = row[0]
    if kind == KIND_TAB:
        return _expand_tab(row, decode_url)
    if kind == KIND_GROUP:
        _, id_, original_id, saved_at, title, color, collapsed, tabs = _pad(row, GROUP_WIDTH)
        return ArchivedGroup(
            id=id_,
            original_id=original_id,
            saved_at=saved_at or 0,
            title=title or "",
            color=color or DEFAULT_GROUP_COLOR,
            collapsed=bool(collapsed),
            tabs=[_expand_tab(t, decode_url) for t in tabs or []],
        )
    raise CodecError(f"Unknown row kind: {kind!r}")


# ---------------------------------------------------------------------------
# Domain table
# ---------------------------------------------------------------------------


def _iter_urls(vault: list[VaultItem]):
    for item in vault:
        if isinstance(item, ArchivedGroup):
            for tab in item.tabs:
                yield tab.url
        else:
            yield item.url


def build_domain_table(vault: list[VaultItem]) -> tuple[list[str], int]:
    """Collect the domain table and the bytes it would save.

    Args:
        vault: Items to scan.

    Returns:
        (domains in first-seen order, estimated savings in bytes)
    """
    index: dict[str, int] = {}
    savings = 0
    for url in _iter_urls(vault):
        parts = split_domain(compact_url(url))
        if parts is None:
            continue
        domain = parts[0]
        if domain not in index:
            index[domain] = len(index)
        savings += len(domain.encode("utf-8")) - len(str(index[domain]))
    return list(index), savings


def should_dedup(vault: list[VaultItem], config: VaultConfig) -> bool:
    """Decide whether a domain table pays for itself.

    Requires at least ``dedup_min_items`` items and savings above the
    table's own encoding cost times ``dedup_safety_factor``.
    """
    if len(vault) < config.dedup_min_items:
        return False
    domains, savings = build_domain_table(vault)
    if not domains:
        return False
    overhead = encoded_size(domains) + DEDUP_ENVELOPE_BYTES
    logger.debug(
        "Domain table: %d domain(s), savings %d vs overhead %d",
        len(domains), savings, overhead,
    )
    return savings > overhead * config.dedup_safety_factor


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def minify(
    vault: list[VaultItem],
    config: Optional[VaultConfig] = None,
    dedup: Optional[bool] = None,
) -> Any:
    """Convert items to positional rows, optionally with a domain table.

    Args:
        vault: Items to encode.
        config: Supplies the dedup thresholds.
        dedup: Force the domain table on or off. None decides by size.

    Returns:
        list of rows, or {"domains": [...], "items": [...]}.
    """
    config = config or VaultConfig()
    use_table = should_dedup(vault, config) if dedup is None else dedup

    if not use_table:
        return [_minify_item(item, compact_url) for item in vault]

    domains, _ = build_domain_table(vault)
    lookup = {domain: i for i, domain in enumerate(domains)}

    def encode_url(url: str) -> str:
        compact = compact_url(url)
        parts = split_domain(compact)
        if parts is None:
            return compact
        return f"{lookup[parts[0]]}{parts[1]}"

    return {
        "domains": domains,
        "items": [_minify_item(item, encode_url) for item in vault],
    }


def _table_decoder(domains: list[str]) -> Callable[[str], str]:
    def decode_url(value: str) -> str:
        digits = 0
        while digits < len(value) and value[digits] in "0123456789":
            digits += 1
        if not digits:
            return expand_url(value)
        idx = int(value[:digits])
        if idx >= len(domains):
            raise CodecError(f"Domain index {idx} out of range")
        return expand_url(domains[idx] + value[digits:])

    return decode_url


def _expand_rows(rows: Any, decode_url: Callable[[str], str]) -> list[VaultItem]:
    if not isinstance(rows, list):
        raise CodecError("Row payload is not a list")
    try:
        return [_expand_row(row, decode_url) for row in rows]
    except (ValueError, TypeError) as exc:
        raise CodecError(f"Invalid row: {exc}") from exc


def _expand_objects(records: list[Any]) -> list[VaultItem]:
    now = _now_ms()
    prepared = []
    for record in records:
        if not isinstance(record, dict):
            raise CodecError("Mixed object/non-object payload")
        if is_legacy_record(record):
            record = migrate_legacy_record(record, now)
        prepared.append(record)
    try:
        return parse_vault(prepared)
    except ValidationError as exc:
        raise CodecError(f"Invalid vault record: {exc}") from exc


def expand(data: Any) -> list[VaultItem]:
    """Decode any stored payload shape back into vault items.

    Raises:
        CodecError: If the shape is not recognised or a record is invalid.
    """
    if isinstance(data, dict):
        if "domains" in data:
            domains = data["domains"]
            if not isinstance(domains, list):
                raise CodecError("Domain table is not a list")
            return _expand_rows(data.get("items"), _table_decoder(domains))
        raise CodecError("Unrecognised payload object")

    if not isinstance(data, list):
        raise CodecError(f"Unrecognised payload type: {type(data).__name__}")
    if not data:
        return []
    if isinstance(data[0], list):
        return _expand_rows(data, expand_url)
    if isinstance(data[0], dict):
        return _expand_objects(data)
    raise CodecError("Unrecognised payload rows")


@dataclass
class EncodedPayload:
    """One encoding of a vault, ready to chunk.

    Attributes:
        text: Canonical JSON before compression. Checksummed.
        compressed: compress(text).
        minified: Positional rows were used.
        domain_dedup: A domain table was used.
    """

    text: str
    compressed: str
    minified: bool
    domain_dedup: bool

    @property
    def size(self) -> int:
        """Stored size of the compressed string in bytes."""
        return encoded_size(self.compressed)

    @property
    def checksum(self) -> str:
        return compute_checksum(self.text)

    @property
    def payload_checksum(self) -> str:
        """Digest of the compressed string exactly as stored."""
        return compute_checksum(self.compressed)


def encode_vault(
    vault: list[VaultItem],
    minified: bool = True,
    config: Optional[VaultConfig] = None,
) -> EncodedPayload:
    """Encode and compress a vault in one of the two storage modes."""
    if minified:
        data = minify(vault, config)
        dedup = isinstance(data, dict)
    else:
        data = dump_vault(vault)
        dedup = False
    text = canonical_json(data)
    return EncodedPayload(
        text=text,
        compressed=compress(text),
        minified=minified,
        domain_dedup=dedup,
    )


def decode_text(text: str) -> list[VaultItem]:
    """Parse decompressed JSON text into vault items."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodecError(f"Payload is not JSON: {exc}") from exc
    return expand(data)
