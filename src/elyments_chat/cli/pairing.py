"""CLI: elyments pairing list|approve"""

import click
from rich.console import Console
from rich.table import Table

from elyments_chat.pairing import dump_requests
from elyments_chat.policy import CHANNEL_ID

console = Console()

APPROVED_MESSAGE = "Your access has been approved. Send a message to start chatting."


def _get_client(require_login: bool = True):
    from elyments_chat.cli.main import _get_client
    return _get_client(require_login)


def _get_pairing_store():
    from elyments_chat.cli.main import _get_pairing_store
    return _get_pairing_store()


def _run(coro):
    from elyments_chat.cli.main import _run
    return _run(coro)


@click.group()
def pairing():
    """Approve direct-message senders that asked for access."""


@pairing.command("list")
@click.option("--json-output", "--json", is_flag=True)
def pairing_list(json_output: bool):
    """List pending pairing requests."""

    async def _list():
        requests = await _get_pairing_store().list_requests(CHANNEL_ID)
        if json_output:
            click.echo(dump_requests(requests))
            return
        if not requests:
            console.print("[dim]No pending pairing requests.[/dim]")
            return
        table = Table(title="Pending pairing requests")
        table.add_column("Code", style="bold")
        table.add_column("Sender")
        table.add_column("Name")
        table.add_column("Requested")
        for r in requests:
            table.add_row(r.code, r.sender_id, str(r.meta.get("name", "")), f"{r.created_at:%Y-%m-%d %H:%M}")
        console.print(table)

    _run(_list())


@pairing.command("approve")
@click.argument("code")
@click.option("--notify", is_flag=True, help="Tell the sender they were approved")
def pairing_approve(code: str, notify: bool):
    """Approve the sender holding CODE."""

    async def _approve():
        request = await _get_pairing_store().approve(CHANNEL_ID, code)
        if request is None:
            console.print(f"[red]No pending request with code {code}.[/red]")
            raise SystemExit(1)
        console.print(f"[green]Approved {request.sender_id}.[/green]")
        if notify:
            client = _get_client()
            try:
                await client.connect()
                await client.send_text(f"user:{request.sender_id}", APPROVED_MESSAGE)
            finally:
                await client.close()

    _run(_approve())
