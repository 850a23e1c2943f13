"""
Compression-tier negotiation.

When a vault does not fit, give up fidelity one step at a time:

    full         everything
    no_favicons  favicons dropped (base64 icons dominate payload size)
    minimal      also drop colors, collapsed state and restoration hints

Each tier is tried in both minified and named-object modes and the
first combination that fits wins. Sizes are always recomputed, never
cached: stripping changes content too much to extrapolate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import VaultConfig
from ..models import (
    DEFAULT_GROUP_COLOR,
    TIER_ORDER,
    ArchivedGroup,
    ArchivedTab,
    CompressionTier,
    VaultItem,
    copy_vault,
)
from .chunker import estimate_chunk_count
from .codec import EncodedPayload, encode_vault
from .errors import QuotaExceededError

logger = logging.getLogger("tabvault.sync.tiers")


@dataclass
class TierChoice:
    """The accepted (tier, mode) and its encoded payload."""

    tier: CompressionTier
    payload: EncodedPayload
    stored_size: int


def _strip_tab(tab: ArchivedTab, tier: CompressionTier) -> None:
    tab.favicon = ""
    if tier is CompressionTier.MINIMAL:
        tab.was_pinned = False
        tab.was_muted = False
        tab.was_frozen = False


def strip_for_tier(vault: list[VaultItem], tier: CompressionTier) -> list[VaultItem]:
    """Return a stripped deep copy of ``vault`` for ``tier``.

    The input is never modified.
    """
    stripped = copy_vault(vault)
    if tier is CompressionTier.FULL:
        return stripped
    for item in stripped:
        if isinstance(item, ArchivedGroup):
            if tier is CompressionTier.MINIMAL:
                item.color = DEFAULT_GROUP_COLOR
                item.collapsed = False
            for tab in item.tabs:
                _strip_tab(tab, tier)
        else:
            _strip_tab(item, tier)
    return stripped


def stored_size(payload: EncodedPayload, config: VaultConfig) -> int:
    """Bytes a payload will occupy once chunked: content plus per-key cost."""
    chunks = estimate_chunk_count(payload.size, config)
    per_chunk = len(config.chunk_key(chunks).encode("utf-8")) + config.chunk_overhead_bytes
    return payload.size + chunks * per_chunk


def negotiate_tier(
    vault: list[VaultItem],
    budget: int,
    config: Optional[VaultConfig] = None,
) -> TierChoice:
    """Find the least lossy tier whose encoding fits ``budget`` bytes.

    Args:
        vault: Snapshot to encode. Not modified.
        budget: Bytes the stored chunks may occupy.
        config: Codec and chunk settings.

    Returns:
        TierChoice for the first fitting (tier, mode).

    Raises:
        QuotaExceededError: Nothing fits, even minimal and minified.
    """
    config = config or VaultConfig()
    smallest: Optional[int] = None
    for tier in TIER_ORDER:
        candidate = strip_for_tier(vault, tier)
        for minified in (True, False):
            payload = encode_vault(candidate, minified=minified, config=config)
            size = stored_size(payload, config)
            logger.debug(
                "Tier %s (%s): %d bytes against budget %d",
                tier.value, "minified" if minified else "plain", size, budget,
            )
            if size <= budget:
                if tier is not CompressionTier.FULL:
                    logger.info("Vault degraded to %s tier to fit quota", tier.value)
                return TierChoice(tier=tier, payload=payload, stored_size=size)
            smallest = size if smallest is None else min(smallest, size)

    raise QuotaExceededError(
        f"Vault needs at least {smallest} bytes, only {budget} available"
    )
