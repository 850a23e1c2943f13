"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the session factory and the
status formatting helpers used by every command group.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

from rich.console import Console

from .. import VAULT_HOME
from ..sync import VaultSession
from ..sync.models import StorageHealth, WarningLevel

console = Console()

T = TypeVar("T")


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Drive one engine coroutine to completion from a sync command."""
    return asyncio.run(coro)


def open_session(home: str) -> VaultSession:
    """Open a session on the file-backed storage areas under ``home``."""
    return VaultSession.open(Path(home).expanduser())


def level_icon(level: Optional[WarningLevel]) -> str:
    """Map a quota warning level to Rich markup.

    Args:
        level: Warning level, or None when unknown.

    Returns:
        str: Rich markup string for the level.
    """
    return {
        WarningLevel.NONE: "[bold green]OK[/]",
        WarningLevel.WARNING: "[bold yellow]WARNING[/]",
        WarningLevel.CRITICAL: "[bold red]CRITICAL[/]",
    }.get(level, "[dim]UNKNOWN[/]")


def health_icon(health: StorageHealth) -> str:
    return {
        StorageHealth.HEALTHY: "[bold green]HEALTHY[/]",
        StorageHealth.DEGRADED: "[bold yellow]DEGRADED[/]",
        StorageHealth.CRITICAL: "[bold red]CRITICAL[/]",
    }.get(health, "[dim]UNKNOWN[/]")


def human_bytes(n: Optional[int]) -> str:
    if n is None:
        return "-"
    if n < 1024:
        return f"{n} B"
    return f"{n / 1024:.1f} KB"
