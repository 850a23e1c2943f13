"""
Chunker -- split a compressed payload into per-item-sized segments.

Each chunk, stored under its own key, must stay under the backend's
per-item ceiling. The budget for chunk ``i`` is the ceiling minus the
byte length of key ``i`` minus a fixed overhead, and the largest
prefix that fits is found by binary search over string indices.

Splitting only ever happens between characters, so joining the chunks
in key order gives back the exact input.
"""

from __future__ import annotations

import json
import logging
from typing import Callable

from ..config import VaultConfig
from .errors import ChunkBudgetError

logger = logging.getLogger("tabvault.sync.chunker")


def chunk_bytes(text: str) -> int:
    """Bytes a chunk's content occupies once JSON-encoded, quotes excluded."""
    return len(json.dumps(text, ensure_ascii=False).encode("utf-8")) - 2


def chunk_budget(key: str, config: VaultConfig) -> int:
    """Content bytes available to the chunk stored under ``key``."""
    return (
        config.quota_bytes_per_item
        - len(key.encode("utf-8"))
        - config.chunk_overhead_bytes
    )


def _largest_fit(text: str, offset: int, budget: int) -> int:
    """Largest end index such that text[offset:end] fits the budget."""
    lo, hi = offset + 1, len(text)
    if chunk_bytes(text[offset:lo]) > budget:
        return offset
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if chunk_bytes(text[offset:mid]) <= budget:
            lo = mid
        else:
            hi = mid - 1
    return lo


def split_text(text: str, budget_for: Callable[[int], int]) -> list[str]:
    """Split ``text`` so chunk ``i`` fits ``budget_for(i)`` bytes.

    Raises:
        ChunkBudgetError: A single character does not fit. Nothing is
            truncated; the caller has no way to recover from this.
    """
    chunks: list[str] = []
    offset = 0
    while offset < len(text):
        budget = budget_for(len(chunks))
        end = _largest_fit(text, offset, budget)
        if end == offset:
            raise ChunkBudgetError(
                f"Character at offset {offset} does not fit a "
                f"{budget}-byte chunk budget"
            )
        chunks.append(text[offset:end])
        offset = end
    return chunks


def split_into_chunks(
    compressed: str, config: VaultConfig
) -> tuple[list[str], list[str]]:
    """Split a compressed vault into chunks and their keys.

    Keys are dense and zero-based: ``<chunk_prefix>0``, ``1``, ...

    Args:
        compressed: Output of codec.compress().
        config: Supplies the per-item ceiling, overhead and key prefix.

    Returns:
        (chunks, chunk_keys), same length, same order.
    """
    chunks = split_text(
        compressed, lambda i: chunk_budget(config.chunk_key(i), config)
    )
    keys = [config.chunk_key(i) for i in range(len(chunks))]
    logger.debug(
        "Split %d chars into %d chunk(s)", len(compressed), len(chunks)
    )
    return chunks, keys


def join_chunks(chunks: list[str]) -> str:
    return "".join(chunks)


def estimate_chunk_count(size: int, config: VaultConfig) -> int:
    """Rough number of chunks a payload of ``size`` bytes needs."""
    budget = max(chunk_budget(config.chunk_key(0), config), 1)
    return max(1, -(-size // budget))
