"""Identity commands: init, whoami."""

from __future__ import annotations

import sys

import click

from ._common import console, fail_on_error, home_option, home_path


def register_identity_commands(main: click.Group) -> None:
    """Register the identity commands."""

    @main.command()
    @click.option("--import-key", "private_key", default=None, help="Use an existing private key (hex).")
    @click.option("--force", is_flag=True, help="Replace an existing identity.")
    @home_option
    @fail_on_error
    def init(private_key, force, home):
        """Create the local identity and default configuration."""
        from ..config import config_path, load_config, save_config
        from ..identity import generate_identity, import_identity, load_identity

        home_dir = home_path(home)
        existing = load_identity(home_dir)
        if existing is not None and not force:
            console.print(f"\n  [yellow]Identity already exists:[/] [cyan]{existing.username}[/]")
            console.print("  Use --force to replace it.\n")
            sys.exit(1)

        if private_key:
            identity = import_identity(home_dir, private_key)
        else:
            identity = generate_identity(home_dir)
        if not config_path(home_dir).exists():
            save_config(load_config(home_dir), home_dir)

        console.print(f"\n  [green]Identity ready:[/] [cyan]{identity.username}[/]")
        console.print(f"  Address: [bold]{identity.public_key}[/]\n")

    @main.command()
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    @fail_on_error
    def whoami(json_out, home):
        """Show the local identity and address."""
        from ..bridge import to_transport_address
        from ..identity import require_identity

        identity = require_identity(home_path(home))
        if json_out:
            click.echo(identity.model_dump_json(indent=2, exclude={"private_key"}))
            return

        console.print(f"\n  [bold]Username:[/]   [cyan]{identity.username}[/]")
        console.print(f"  [bold]Address:[/]    {identity.public_key}")
        console.print(f"  [bold]Relay key:[/]  [dim]{to_transport_address(identity.public_key)}[/]\n")
