"""
Pydantic models for the archived vault: what a user saved, not what is open.

A vault item is either a single tab or a group of tabs. Neither is live
state: the browser tab it came from may be long gone, so pinned/muted/
frozen survive only as restoration hints.
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Annotated, Any, Iterator, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_GROUP_COLOR = "grey"


class CompressionTier(str, Enum):
    """Fidelity ladder used when a vault does not fit the sync quota.

    Each tier loses strictly more than the one before it.
    """

    FULL = "full"
    NO_FAVICONS = "no_favicons"
    MINIMAL = "minimal"

    @property
    def rank(self) -> int:
        """Position in the ladder, 0 being the most faithful."""
        return TIER_ORDER.index(self)


TIER_ORDER = [
    CompressionTier.FULL,
    CompressionTier.NO_FAVICONS,
    CompressionTier.MINIMAL,
]


class VaultModel(BaseModel):
    """Base for anything that crosses the storage boundary.

    Serialized with camelCase keys so records written by the browser
    extension and records built in Python validate the same way.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ArchivedTab(VaultModel):
    """A saved tab.

    Attributes:
        id: Vault-scoped identifier, unique across the whole vault.
        original_id: Id the tab had in the live browser, for traceability.
        saved_at: Archive time in epoch milliseconds.
        title: Tab title at save time.
        url: Tab URL.
        favicon: Favicon URL or data URI. Empty when unknown or stripped.
        was_pinned: Tab was pinned when archived.
        was_muted: Tab was muted when archived.
        was_frozen: Tab was discarded (frozen) when archived.
    """

    id: str
    original_id: Optional[Union[int, str]] = None
    saved_at: int = 0
    title: str = ""
    url: str = ""
    favicon: str = ""
    was_pinned: bool = False
    was_muted: bool = False
    was_frozen: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class ArchivedGroup(VaultModel):
    """A saved tab group and its ordered tabs."""

    id: str
    original_id: Optional[Union[int, str]] = None
    saved_at: int = 0
    title: str = ""
    color: str = DEFAULT_GROUP_COLOR
    collapsed: bool = False
    tabs: list[ArchivedTab] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


def _item_kind(value: Any) -> str:
    """Discriminate tabs from groups: only groups carry a ``tabs`` list."""
    if isinstance(value, dict):
        return "group" if "tabs" in value else "tab"
    return "group" if isinstance(value, ArchivedGroup) else "tab"


VaultItem = Annotated[
    Union[
        Annotated[ArchivedTab, Tag("tab")],
        Annotated[ArchivedGroup, Tag("group")],
    ],
    Discriminator(_item_kind),
]

_VAULT_ADAPTER: TypeAdapter[list[VaultItem]] = TypeAdapter(list[VaultItem])


def parse_vault(data: Any) -> list[VaultItem]:
    """Validate a list of plain dicts into vault items.

    Args:
        data: Decoded JSON, a list of item dicts.

    Returns:
        list: ArchivedTab / ArchivedGroup instances.

    Raises:
        pydantic.ValidationError: If any record does not fit either shape.
    """
    return _VAULT_ADAPTER.validate_python(data)


def dump_vault(vault: list[VaultItem]) -> list[dict[str, Any]]:
    """Serialize vault items to camelCase dicts."""
    return [item.model_dump(by_alias=True) for item in vault]


def is_group(item: VaultItem) -> bool:
    return isinstance(item, ArchivedGroup)


def iter_ids(vault: list[VaultItem]) -> Iterator[str]:
    """Yield every id in the vault, including tabs nested in groups."""
    for item in vault:
        yield item.id
        if isinstance(item, ArchivedGroup):
            for tab in item.tabs:
                yield tab.id


def find_duplicate_ids(vault: list[VaultItem]) -> list[str]:
    """Return ids that appear more than once anywhere in the vault."""
    counts = Counter(iter_ids(vault))
    return sorted(key for key, n in counts.items() if n > 1)


def copy_vault(vault: list[VaultItem]) -> list[VaultItem]:
    """Deep copy a vault so later edits cannot leak into a baseline."""
    return [item.model_copy(deep=True) for item in vault]
