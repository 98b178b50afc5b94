"""Contact commands: add, list, remove."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import console, fail_on_error, format_time, home_option, home_path, short


def _synchronizer(home):
    from ..sync.engine import MessageSynchronizer

    sync = MessageSynchronizer.from_home(home_path(home))
    sync.start()
    return sync


def register_contact_commands(main: click.Group) -> None:
    """Register the contact command group."""

    @main.group()
    def contact():
        """Contacts — the people you exchange messages with."""

    @contact.command("add")
    @click.argument("address")
    @click.option("--name", default="", help="Display name.")
    @home_option
    @fail_on_error
    def contact_add(address, name, home):
        """Add a contact by native address (66 hex chars)."""
        sync = _synchronizer(home)
        if sync.add_contact(address.strip().lower(), display_name=name):
            console.print(f"\n  [green]Added contact:[/] {short(address)}\n")
        else:
            console.print(f"\n  [yellow]Already a contact:[/] {short(address)}\n")

    @contact.command("list")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    @fail_on_error
    def contact_list(json_out, home):
        """List contacts, most recently active first."""
        sync = _synchronizer(home)
        contacts = sync.sorted_contacts()

        if json_out:
            click.echo(json.dumps([c.model_dump() for c in contacts], indent=2))
            return

        console.print()
        if not contacts:
            console.print("  [dim]No contacts yet.[/]")
            console.print("  Add one: raabta contact add <address>\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"Contacts ({len(contacts)})")
        table.add_column("Address", style="cyan")
        table.add_column("Name")
        table.add_column("Last message", style="dim")
        table.add_column("Unread", justify="right")

        for c in contacts:
            last = sync.last_message(c.address)
            unread = sync.unread_count(c.address)
            table.add_row(
                short(c.address, 20),
                c.display_name,
                format_time(last.timestamp) if last else "",
                f"[bold green]{unread}[/]" if unread else "",
            )

        console.print(table)
        console.print()

    @contact.command("remove")
    @click.argument("address")
    @click.confirmation_option(prompt="Delete this contact and the whole conversation?")
    @home_option
    @fail_on_error
    def contact_remove(address, home):
        """Remove a contact and its conversation."""
        sync = _synchronizer(home)
        if sync.remove_contact(address):
            console.print(f"\n  [green]Removed contact:[/] {short(address)}\n")
        else:
            console.print(f"\n  [yellow]Contact '{short(address)}' not found.[/]\n")
