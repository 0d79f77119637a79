"""CLI: elyments send, elyments history, elyments monitor"""

import asyncio
import signal
from typing import Optional, Sequence

import click
from rich.console import Console
from rich.panel import Panel

from elyments_chat.errors import ElymentsError
from elyments_chat.monitor import ElymentsMonitor, InboundEnvelope, ReplyContext, ReplyPayload

console = Console()


def _load_config():
    from elyments_chat.cli.main import _load_config
    return _load_config()


def _get_client(require_login: bool = True):
    from elyments_chat.cli.main import _get_client
    return _get_client(require_login)


def _get_pairing_store():
    from elyments_chat.cli.main import _get_pairing_store
    return _get_pairing_store()


def _run(coro):
    from elyments_chat.cli.main import _run
    return _run(coro)


class ConsoleReplyEngine:
    """Prints admitted messages. With ``echo`` set, replies with the body."""

    def __init__(self, echo: bool = False):
        self.echo = echo

    async def generate(self, envelope: InboundEnvelope, context: ReplyContext) -> Sequence[ReplyPayload]:
        title = f"{context.sender_name} ({context.chat_type})"
        console.print(Panel(context.raw_body, title=title, subtitle=context.chat_id))
        if not self.echo:
            return []
        return [ReplyPayload(text=context.raw_body)]


@click.command("send")
@click.argument("target")
@click.argument("message")
@click.option("--media", default=None, help="File path or URL to attach")
def send_cmd(target: str, message: str, media: Optional[str]):
    """Send MESSAGE to TARGET (name, user:<id>, group:<id> or address)."""

    async def _send():
        client = _get_client()
        try:
            with console.status("Connecting..."):
                await client.connect()
            with console.status("Sending..."):
                result = await client.send_message(target, message, media=media)
            console.print(f"[green]Sent[/green] {result.message_id} → {result.to}")
        except ElymentsError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    _run(_send())


@click.command("history")
@click.argument("target")
@click.option("--limit", default=50, show_default=True)
def history_cmd(target: str, limit: int):
    """Show recent messages with TARGET."""

    async def _history():
        client = _get_client()
        try:
            messages = await client.get_history(target, limit)
        finally:
            await client.close()
        if not messages:
            console.print("[dim]No messages.[/dim]")
            return
        for m in messages:
            who = m.sender_name or m.from_address
            console.print(f"[dim]{m.timestamp:%Y-%m-%d %H:%M}[/dim] [bold]{who}[/bold]: {m.body}")

    _run(_history())


@click.command("monitor")
@click.option("--echo", is_flag=True, help="Reply to admitted messages with their own text")
def monitor_cmd(echo: bool):
    """Listen for messages and apply the access policy (Ctrl+C to stop)."""

    async def _monitor():
        client = _get_client()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        except NotImplementedError:
            pass

        def on_error(e: BaseException) -> None:
            console.print(f"[red]Error: {e}[/red]")

        monitor = ElymentsMonitor(
            client,
            _load_config(),
            ConsoleReplyEngine(echo=echo),
            _get_pairing_store(),
            on_error=on_error,
        )
        console.print("[dim]Listening... (Ctrl+C to stop)[/dim]")
        try:
            await monitor.run(stop)
        finally:
            await client.close()

    _run(_monitor())
