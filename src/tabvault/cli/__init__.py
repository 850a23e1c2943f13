"""
TabVault CLI: inspect and operate a file-backed vault.

Each command group lives in its own module and is registered on the
main Click group below.

Entry point: tabvault.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="tabvault")
@click.option("--verbose", "-v", is_flag=True, help="Show engine log output.")
def main(verbose: bool):
    """TabVault: archived tabs in a tiny synced store.

    Compressed, chunked, checksummed. Falls back to local storage
    before it ever loses a tab.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .vault_cmd import register_vault_commands
from .sync_cmd import register_sync_commands

register_vault_commands(main)
register_sync_commands(main)
