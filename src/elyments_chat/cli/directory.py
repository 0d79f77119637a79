"""CLI: elyments chats, elyments resolve, elyments profile show|set-name"""

import json

import click
from rich.console import Console
from rich.table import Table

console = Console()


def _get_client(require_login: bool = True):
    from elyments_chat.cli.main import _get_client
    return _get_client(require_login)


def _run(coro):
    from elyments_chat.cli.main import _run
    return _run(coro)


@click.command("chats")
@click.option("--groups", "groups_only", is_flag=True, help="Only list groups")
@click.option("--json-output", "--json", is_flag=True)
def chats_cmd(groups_only: bool, json_output: bool):
    """List chats and groups."""

    async def _list():
        client = _get_client()
        try:
            with console.status("Loading..."):
                items = [] if groups_only else await client.list_chats()
                items += await client.list_groups()
        finally:
            await client.close()
        if json_output:
            click.echo(json.dumps([c.model_dump() for c in items], indent=2))
            return
        table = Table(title=f"Chats ({len(items)})")
        table.add_column("Title", style="bold")
        table.add_column("Address")
        table.add_column("Type")
        table.add_column("Last message")
        for c in items:
            table.add_row(c.title, c.address, "group" if c.is_group else "direct", (c.last_message or "")[:40])
        console.print(table)

    _run(_list())


@click.command("resolve")
@click.argument("query")
def resolve_cmd(query: str):
    """Resolve a name or id to an address."""

    async def _resolve():
        client = _get_client()
        try:
            result = await client.resolve_recipient(query)
        finally:
            await client.close()
        if result is None:
            console.print(f"[yellow]No chat or group matches {query!r}.[/yellow]")
            raise SystemExit(1)
        kind = "group" if result.is_group else "direct"
        console.print(f"[green]{result.title}[/green] → {result.address} ({kind})")

    _run(_resolve())


@click.group()
def profile():
    """Display name used on outbound messages."""


@profile.command("show")
def profile_show():
    client = _get_client(require_login=False)
    console.print(f"Sender name: {client.sender_name}")


@profile.command("set-name")
@click.argument("name")
def profile_set_name(name: str):
    client = _get_client()
    client.update_profile(name)
    console.print(f"[green]Sender name set to {name}.[/green]")
