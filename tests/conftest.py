"""Shared test fixtures for tabvault."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Callable

import pytest

from tabvault.config import VaultConfig
from tabvault.models import ArchivedGroup, ArchivedTab, VaultItem
from tabvault.sync.backends import MemoryStorageArea
from tabvault.sync.engine import VaultSession

SAVED_AT = 1_700_000_000_000


@pytest.fixture
def tmp_vault_home(tmp_path: Path) -> Path:
    """Provide a temporary vault home directory."""
    home = tmp_path / ".tabvault"
    home.mkdir()
    return home


@pytest.fixture
def config() -> VaultConfig:
    """Default limits with retry backoff switched off."""
    return VaultConfig(initial_backoff_seconds=0.0)


@pytest.fixture
def make_tab() -> Callable[..., ArchivedTab]:
    """Factory for archived tabs with already-normalized URLs."""

    def _make(n: int, domain: str = "example.com", **overrides: Any) -> ArchivedTab:
        fields = {
            "id": f"tab-{n}",
            "original_id": 100 + n,
            "saved_at": SAVED_AT + n,
            "title": f"Tab {n} {hashlib.sha256(str(n).encode()).hexdigest()}",
            "url": f"https://{domain}/page/{n}",
            "favicon": f"https://{domain}/favicon.ico",
        }
        fields.update(overrides)
        return ArchivedTab(**fields)

    return _make


@pytest.fixture
def make_vault(make_tab) -> Callable[..., list[VaultItem]]:
    """Factory for a vault of ``n`` tabs, optionally followed by a group."""

    def _make(n: int, with_group: bool = False) -> list[VaultItem]:
        vault: list[VaultItem] = [make_tab(i) for i in range(n)]
        if with_group:
            vault.append(ArchivedGroup(
                id="group-1",
                original_id=7,
                saved_at=SAVED_AT,
                title="Reading list",
                color="blue",
                collapsed=True,
                tabs=[make_tab(1000 + i, domain="news.example.org") for i in range(3)],
            ))
        return vault

    return _make


@pytest.fixture
def sample_vault(make_vault) -> list[VaultItem]:
    """Five tabs and a group of three."""
    return make_vault(5, with_group=True)


@pytest.fixture
def sync_area(config: VaultConfig) -> MemoryStorageArea:
    """Sync area bound by the configured quotas."""
    return MemoryStorageArea(
        quota_bytes=config.sync_quota_bytes,
        quota_bytes_per_item=config.quota_bytes_per_item,
        area_name="sync",
    )


@pytest.fixture
def local_area() -> MemoryStorageArea:
    return MemoryStorageArea(area_name="local")


@pytest.fixture
def session(sync_area, local_area, config) -> VaultSession:
    """A session over the in-memory sync and local areas."""
    return VaultSession(sync_area, local_area, config)


@pytest.fixture
def make_session(local_area) -> Callable[..., VaultSession]:
    """Build a session whose sync area follows custom config values."""

    def _make(**overrides: Any) -> VaultSession:
        overrides.setdefault("initial_backoff_seconds", 0.0)
        cfg = VaultConfig(**overrides)
        area = MemoryStorageArea(
            quota_bytes=cfg.sync_quota_bytes,
            quota_bytes_per_item=cfg.quota_bytes_per_item,
            area_name="sync",
        )
        return VaultSession(area, local_area, cfg)

    return _make


@pytest.fixture
def noisy_icon() -> Callable[[int], str]:
    """Factory for favicon data URIs that barely compress."""

    def _make(n: int) -> str:
        digest = "".join(
            hashlib.sha256(f"{n}-{i}".encode()).hexdigest() for i in range(16)
        )
        return "data:image/png;base64," + digest

    return _make
