"""Shared utilities for all CLI command modules.

Provides the Rich console, home resolution, and the error wrapper
every command uses to turn library errors into a red line and exit 1.
"""

from __future__ import annotations

import sys
from datetime import datetime
from functools import wraps
from pathlib import Path

import click
from rich.console import Console

from .. import RAABTA_HOME
from ..errors import RaabtaError

console = Console()

home_option = click.option(
    "--home", "home", default=RAABTA_HOME, type=click.Path(), help="Raabta home directory.",
)


def home_path(home: str) -> Path:
    return Path(home).expanduser()


def short(address: str, width: int = 16) -> str:
    """Abbreviate an address for tables."""
    return address if len(address) <= width else address[:width] + "..."


def format_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def fail_on_error(func):
    """Print a ``RaabtaError`` in red and exit 1 instead of a traceback."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RaabtaError as exc:
            console.print(f"\n  [red]Error:[/] {exc}\n")
            sys.exit(1)

    return wrapper
