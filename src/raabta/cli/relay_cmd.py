"""Relay and upload server commands."""

from __future__ import annotations

import sys

import click

from ._common import console, home_option, home_path


def register_relay_commands(main: click.Group) -> None:
    """Register the relay and filedrop command groups."""

    @main.group()
    def relay():
        """Relay endpoints used for publish and subscribe."""

    @relay.command("list")
    @home_option
    def relay_list(home):
        """List configured relay endpoints."""
        from ..config import load_config

        config = load_config(home_path(home))
        console.print()
        if not config.relays:
            console.print("  [dim]No relays configured.[/]\n")
            return
        for url in config.relays:
            console.print(f"  [cyan]{url}[/]")
        console.print()

    @relay.command("add")
    @click.argument("url")
    @home_option
    def relay_add(url, home):
        """Add a relay endpoint (ws:// or wss://)."""
        from ..config import load_config, save_config

        if not url.startswith(("ws://", "wss://")):
            console.print("\n  [red]Error:[/] relay URL must start with ws:// or wss://\n")
            sys.exit(1)

        home_dir = home_path(home)
        config = load_config(home_dir)
        if url in config.relays:
            console.print(f"\n  [yellow]Already configured:[/] {url}\n")
            return
        config.relays.append(url)
        save_config(config, home_dir)
        console.print(f"\n  [green]Added relay:[/] {url}\n")

    @relay.command("remove")
    @click.argument("url")
    @home_option
    def relay_remove(url, home):
        """Remove a relay endpoint."""
        from ..config import load_config, save_config

        home_dir = home_path(home)
        config = load_config(home_dir)
        if url not in config.relays:
            console.print(f"\n  [yellow]Relay '{url}' not configured.[/]\n")
            return
        config.relays = [r for r in config.relays if r != url]
        save_config(config, home_dir)
        console.print(f"\n  [green]Removed relay:[/] {url}\n")

    @main.group()
    def filedrop():
        """Encrypted upload servers for file messages."""

    @filedrop.command("list")
    @home_option
    def filedrop_list(home):
        """List saved upload servers; the active one is marked."""
        from ..config import load_config, saved_filedrop_servers

        config = load_config(home_path(home))
        console.print()
        for server in saved_filedrop_servers(config):
            marker = "[green]*[/]" if server == config.filedrop_server else " "
            console.print(f"  {marker} {server}")
        console.print()

    @filedrop.command("use")
    @click.argument("server", required=False, default="")
    @home_option
    def filedrop_use(server, home):
        """Select the active upload server (blank resets to the default)."""
        from ..config import add_filedrop_server, load_config, save_config, set_filedrop_server

        home_dir = home_path(home)
        config = load_config(home_dir)
        active = set_filedrop_server(config, server)
        add_filedrop_server(config, active)
        save_config(config, home_dir)
        console.print(f"\n  [green]Uploading to:[/] {active}\n")

    @filedrop.command("remove")
    @click.argument("server")
    @home_option
    def filedrop_remove(server, home):
        """Forget a saved upload server."""
        from ..config import (
            DEFAULT_FILEDROP_SERVER,
            load_config,
            remove_filedrop_server,
            save_config,
        )

        home_dir = home_path(home)
        config = load_config(home_dir)
        if not remove_filedrop_server(config, server):
            console.print(f"\n  [yellow]Cannot remove '{server}'.[/]\n")
            sys.exit(1)
        if config.filedrop_server == server:
            config.filedrop_server = DEFAULT_FILEDROP_SERVER
        save_config(config, home_dir)
        console.print(f"\n  [green]Removed server:[/] {server}\n")
