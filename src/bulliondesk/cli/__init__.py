"""
BullionDesk CLI: backup and restore from the command line.

The main Click group is defined here and each command group
registers itself from its own module.

Entry point: bulliondesk.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="bulliondesk")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def main(verbose: bool):
    """BullionDesk: encrypted backups and multi-device merge."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .backup import register_backup_commands

register_backup_commands(main)
