"""Sync commands: enable, disable."""

from __future__ import annotations

import click

from ._common import VAULT_HOME, console, open_session, run

from rich.panel import Panel


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Switch remote sync of the vault on or off."""

    @sync.command("enable")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def sync_enable(home: str):
        """Move the local vault into the sync area.

        Sync stays off when the vault does not fit.
        """
        session = open_session(home)

        async def _enable():
            loaded = await session.load_vault(sync_enabled=False)
            return await session.toggle_sync_mode(loaded.vault, enable=True)

        result = run(_enable())
        if not result.success:
            console.print("[red]Could not enable sync.[/]")
            raise SystemExit(1)
        if result.fallback_to_local:
            console.print(Panel(
                "[bold yellow]Vault does not fit the sync quota[/]\n"
                "It stays in local storage; sync remains off.",
                title="Sync",
                border_style="yellow",
            ))
            return
        console.print("\n[green]Vault sync enabled.[/]\n")

    @sync.command("disable")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def sync_disable(home: str):
        """Keep the vault locally and clear it from the sync area."""
        session = open_session(home)

        async def _disable():
            loaded = await session.load_vault()
            return await session.disable_vault_sync(loaded.vault)

        result = run(_disable())
        if not result.success:
            console.print("[red]Could not write the vault locally; sync left on.[/]")
            raise SystemExit(1)
        console.print("\n[yellow]Vault sync disabled.[/] Data kept locally.\n")
