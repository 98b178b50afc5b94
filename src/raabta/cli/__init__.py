"""
Raabta CLI — the message sync engine from the command line.

Each command group lives in its own module and is attached to the
main Click group through a register function.

Entry point: raabta.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="raabta")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose):
    """Raabta — encrypted messages over relays and direct links."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .identity_cmd import register_identity_commands
from .contact import register_contact_commands
from .messaging import register_messaging_commands
from .relay_cmd import register_relay_commands

register_identity_commands(main)
register_contact_commands(main)
register_messaging_commands(main)
register_relay_commands(main)
