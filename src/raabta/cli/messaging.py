"""Messaging commands: send, listen, history, status, sweep."""

from __future__ import annotations

import asyncio
import json
import mimetypes
from pathlib import Path

import click
from rich.table import Table

from ._common import console, fail_on_error, format_time, home_option, home_path, short


def _render(message) -> str:
    who = "[bold blue]you[/]" if message.is_sent else f"[cyan]{short(message.sender)}[/]"
    body = message.text
    if message.attachment is not None:
        att = message.attachment
        body = f"[magenta]\\[file: {att.name}, {att.size} bytes][/] {body}".rstrip()
    via = ",".join(t.value for t in message.delivered_via) or "local"
    return f"[dim]{format_time(message.timestamp)}[/] {who}: {body} [dim]({via})[/]"


def register_messaging_commands(main: click.Group) -> None:
    """Register send/listen/history/status/sweep."""

    @main.command()
    @click.argument("address")
    @click.argument("message", required=False, default="")
    @click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False),
                  help="Attach a file (MESSAGE becomes the caption).")
    @click.option("--direct", is_flag=True, help="Stream the file over the direct link instead of uploading.")
    @home_option
    @fail_on_error
    def send(address, message, file_path, direct, home):
        """Send an encrypted message or file to ADDRESS."""
        from ..sync.engine import MessageSynchronizer

        if not message and not file_path:
            raise click.UsageError("Provide a MESSAGE or --file.")

        async def run():
            sync = MessageSynchronizer.from_home(home_path(home))
            await sync.connect()
            try:
                if file_path:
                    path = Path(file_path)
                    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                    data = path.read_bytes()
                    if direct:
                        return await sync.send_file_direct(address, data, path.name, mime_type)
                    return await sync.send_file(address, data, path.name, mime_type, caption=message)
                return await sync.send_text(address, message)
            finally:
                await sync.disconnect()

        sent = asyncio.run(run())
        if sent.delivered_via:
            via = ", ".join(t.value for t in sent.delivered_via)
            console.print(f"\n  [green]Sent[/] to {short(address)} via {via}")
        else:
            console.print("\n  [yellow]Saved locally[/] — no transport accepted the message")
        for transport, error in sent.delivery_errors.items():
            console.print(f"  [dim]{transport}: {error}[/]")
        console.print()

    @main.command()
    @home_option
    @fail_on_error
    def listen(home):
        """Stay connected and print incoming messages until Ctrl-C."""
        from ..sync.engine import MessageSynchronizer

        async def run():
            sync = MessageSynchronizer.from_home(home_path(home))
            sync.on_incoming_message(lambda m: console.print(_render(m)))
            sync.on_file_progress(
                lambda p: console.print(
                    f"[dim]{p.direction} {p.filename}: {p.progress:.0%}[/]"
                ) if p.direction == "receive" else None
            )
            connected = await sync.connect()
            up = [name for name, ok in connected.items() if ok] or ["none"]
            console.print(f"\n  Listening as [cyan]{sync.identity.username}[/] "
                          f"(transports: {', '.join(up)}) — Ctrl-C to stop\n")
            try:
                await asyncio.Event().wait()
            finally:
                await sync.disconnect()

        try:
            asyncio.run(run())
        except KeyboardInterrupt:
            console.print("\n  [dim]Stopped.[/]\n")

    @main.command()
    @click.argument("address")
    @click.option("--reconcile", is_flag=True, help="Backfill from relay history first.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    @fail_on_error
    def history(address, reconcile, json_out, home):
        """Show the conversation with ADDRESS."""
        from ..sync.engine import MessageSynchronizer

        sync = MessageSynchronizer.from_home(home_path(home))
        sync.start()
        if reconcile:
            async def run():
                try:
                    return await sync.reconcile(address)
                finally:
                    await sync.disconnect()

            restored = asyncio.run(run())
            console.print(f"\n  [dim]Restored {len(restored)} message(s) from relays[/]")

        messages = sync.messages_for(address)
        if json_out:
            click.echo(json.dumps(
                [m.model_dump(mode="json", exclude={"ciphertext"}) for m in messages], indent=2,
            ))
            return

        console.print()
        if not messages:
            console.print(f"  [dim]No messages with {short(address)}.[/]\n")
            return
        for message in messages:
            console.print("  " + _render(message))
        sync.mark_as_read(address)
        console.print()

    @main.command()
    @home_option
    @fail_on_error
    def status(home):
        """Show local state (offline; transports are not contacted)."""
        from ..sync.engine import MessageSynchronizer

        sync = MessageSynchronizer.from_home(home_path(home))
        sync.start()
        info = sync.status()

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Username", f"[cyan]{info['username']}[/]")
        table.add_row("Address", info["address"])
        table.add_row("Relays", str(len(sync.relay.relays) if sync.relay else 0))
        table.add_row("Direct links", "configured" if sync.direct else "[dim]disabled[/]")
        table.add_row("Contacts", str(info["contacts"]))
        table.add_row("Messages", str(info["messages"]))
        table.add_row("Unread", str(info["unread"]))
        console.print()
        console.print(table)
        console.print()

    @main.command()
    @home_option
    @fail_on_error
    def sweep(home):
        """Delete messages past their retention period."""
        from ..sync.store import MessageStore

        store = MessageStore(home_path(home) / "raabta.db")
        removed = store.delete_expired()
        store.close()
        console.print(f"\n  [green]Swept[/] {removed} expired message(s)\n")
