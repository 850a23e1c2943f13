"""Vault commands: status, report, save, export, recover, migrate, cleanup."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click

from ._common import (
    VAULT_HOME,
    console,
    health_icon,
    human_bytes,
    level_icon,
    open_session,
    run,
)
from ..models import dump_vault
from ..sync.codec import expand
from ..sync.errors import ChunkBudgetError, ReadCorruptionError
from ..sync.models import StorageResult

from rich.panel import Panel
from rich.table import Table


def _format_ms(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "never"
    moment = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def _print_result(result: StorageResult, title: str) -> None:
    if not result.success:
        console.print(Panel(
            f"[bold red]Failed[/]: {result.error.value if result.error else 'unknown'}",
            title=title,
            border_style="red",
        ))
        return

    lines = []
    if result.fallback_to_local:
        code = result.error.value if result.error else "unknown"
        lines.append(f"[bold yellow]Kept in local storage only[/] ({code})")
    elif result.sync_disabled:
        lines.append("[bold yellow]Sync disabled[/], vault kept locally")
    elif result.used_diff:
        lines.append("[bold green]Synced[/] as a diff")
    else:
        lines.append("[bold green]Synced[/]")
    if result.compression_tier is not None:
        lines.append(f"Tier: {result.compression_tier.value}")
    if result.bytes_used is not None:
        lines.append(
            f"Used: {human_bytes(result.bytes_used)}  "
            f"Available: {human_bytes(result.bytes_available)}  "
            f"Level: {level_icon(result.warning_level)}"
        )
    border = "yellow" if result.fallback_to_local or result.sync_disabled else "green"
    console.print(Panel("\n".join(lines), title=title, border_style=border))


def register_vault_commands(main: click.Group) -> None:
    """Register the vault commands."""

    @main.command("status")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def status(home: str):
        """Show how much of the sync quota the vault uses.

        Examples:

            tabvault status
        """
        session = open_session(home)
        quota = run(session.get_quota())
        enabled = run(session.settings.is_sync_enabled())

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Used", justify="right")
        table.add_column("Available", justify="right")
        table.add_column("Vault share", justify="right")
        table.add_column("Usage", justify="right")
        table.add_column("Level")
        table.add_row(
            human_bytes(quota.used),
            human_bytes(quota.available),
            human_bytes(quota.total),
            f"{quota.percentage:.0%}",
            level_icon(quota.warning_level),
        )

        sync_state = "[green]on[/]" if enabled else "[yellow]off[/]"
        console.print(f"\n  Sync: {sync_state}\n")
        console.print(table)
        console.print()

    @main.command("report")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def report(home: str):
        """Show storage health, usage and orphaned chunks.

        Examples:

            tabvault report
        """
        session = open_session(home)
        rep = run(session.get_storage_report())

        console.print(Panel(
            f"Health: {health_icon(rep.health)}\n"
            f"Sync area: {human_bytes(rep.sync_used)} / {human_bytes(rep.sync_total)}\n"
            f"Local area: {human_bytes(rep.local_used)}\n"
            f"Items backed up: {rep.vault_item_count}\n"
            f"Last sync: {_format_ms(rep.last_sync_time)}\n"
            f"Orphaned chunks: {rep.orphaned_chunks}",
            title="Vault Storage",
            border_style="cyan",
        ))

    @main.command("save")
    @click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def save(snapshot: str, home: str):
        """Save a JSON vault snapshot.

        The file holds a list of tabs and groups, in the archived shape
        or the older live-tab shape.

        Examples:

            tabvault save vault.json
        """
        try:
            data = json.loads(Path(snapshot).read_text(encoding="utf-8"))
            vault = expand(data)
        except (json.JSONDecodeError, ReadCorruptionError) as exc:
            console.print(f"[red]Unreadable snapshot: {exc}[/]")
            raise SystemExit(1)

        session = open_session(home)

        async def _save():
            await session.load_vault()
            return await session.save_vault(vault)

        try:
            result = run(_save())
        except (ValueError, ChunkBudgetError) as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)

        _print_result(result, f"Saved {len(vault)} item(s)")
        if not result.success:
            raise SystemExit(1)

    @main.command("export")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--output", "-o", default=None, type=click.Path(), help="Write to a file instead of stdout.")
    def export(home: str, output: Optional[str]):
        """Load the vault and print it as JSON.

        Examples:

            tabvault export

            tabvault export -o vault.json
        """
        session = open_session(home)
        result = run(session.load_vault_with_retry())
        if result.fallback_to_local:
            code = result.error.value if result.error else "unknown"
            console.print(f"[yellow]Loaded from local backup ({code})[/]", highlight=False)

        text = json.dumps(dump_vault(result.vault), indent=2, ensure_ascii=False)
        if output:
            Path(output).expanduser().write_text(text + "\n", encoding="utf-8")
            console.print(f"[green]Exported {len(result.vault)} item(s) to {output}[/]")
        else:
            click.echo(text)

    @main.command("recover")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def recover(home: str):
        """Rewrite the sync area from the best available copy.

        Examples:

            tabvault recover
        """
        session = open_session(home)
        result = run(session.recover_vault_sync())
        _print_result(result, "Recovery")
        if not result.success:
            raise SystemExit(1)

    @main.command("migrate")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def migrate(home: str):
        """Convert older vault layouts to the current format.

        Safe to run repeatedly.

        Examples:

            tabvault migrate
        """
        session = open_session(home)
        result = run(session.migrate_from_legacy())

        if result.error and not result.migrated:
            code = result.error_code.value if result.error_code else "unknown"
            console.print(f"[red]Migration failed ({code}): {result.error}[/]")
            raise SystemExit(1)
        if not result.migrated:
            console.print("\n[dim]Nothing to migrate.[/]\n")
            return

        console.print(Panel(
            f"[bold green]Migrated[/] {result.item_count} item(s)\n"
            f"Source: {result.source.value}"
            + (f"\n[yellow]{result.error}[/]" if result.error else ""),
            title="Migration",
            border_style="yellow" if result.sync_disabled else "green",
        ))

    @main.command("cleanup")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def cleanup(home: str):
        """Remove chunks no longer referenced by the vault meta.

        Examples:

            tabvault cleanup
        """
        session = open_session(home)
        removed = run(session.cleanup_orphaned_chunks())
        if removed:
            console.print(f"\n[green]Removed {removed} orphaned chunk(s).[/]\n")
        else:
            console.print("\n[dim]No orphaned chunks.[/]\n")
