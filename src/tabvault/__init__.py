"""
TabVault: archived browser tabs that fit in a tiny synced store.

Minify, compress, chunk and verify a vault of saved tabs and groups
so it survives a quota-bound key-value backend with a local backup
always one step behind it.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

VAULT_HOME = os.environ.get("TABVAULT_HOME", "~/.tabvault")
