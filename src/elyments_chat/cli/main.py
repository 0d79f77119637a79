"""
Elyments CLI — `elyments` command.

Commands:
  elyments auth login            OTP login by phone
  elyments chats                 List chats and groups
  elyments resolve <query>       Name or id to address
  elyments send <to> <message>   One-shot message
  elyments history <to>          Recent messages
  elyments profile <cmd>         Display name
  elyments pairing <cmd>         Approve unknown senders
  elyments monitor               Run the inbound pipeline
"""

import asyncio
import logging
from pathlib import Path

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install elyments-chat[cli]")

from elyments_chat import __version__
from elyments_chat.client import ElymentsClient
from elyments_chat.config import ChannelConfig, load_channel_config
from elyments_chat.credentials import DEFAULT_ACCOUNT_ID, default_home
from elyments_chat.pairing import JsonPairingStore

console = Console()


def config_file() -> Path:
    return default_home() / "config.json"


def pairing_file() -> Path:
    return default_home() / "pairing.json"


def _account() -> str:
    ctx = click.get_current_context(silent=True)
    if ctx is not None and ctx.find_root().obj:
        return ctx.find_root().obj.get("account", DEFAULT_ACCOUNT_ID)
    return DEFAULT_ACCOUNT_ID


def _load_config() -> ChannelConfig:
    return load_channel_config(config_file())


def _get_client(require_login: bool = True) -> ElymentsClient:
    cfg = _load_config()
    client = ElymentsClient(account_id=_account(), sender_name=cfg.sender_name)
    if require_login and not client.store.has_session():
        console.print("[red]Not logged in. Run `elyments auth login` first.[/red]")
        raise SystemExit(1)
    return client


def _get_pairing_store() -> JsonPairingStore:
    return JsonPairingStore(pairing_file())


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option(__version__)
@click.option("--account", default=DEFAULT_ACCOUNT_ID, show_default=True, help="Credential account id")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, account: str, verbose: bool):
    """Elyments CLI — chat with Elyments from the terminal."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
    ctx.obj = {"account": account}


# Register subcommands from separate modules
from elyments_chat.cli.auth import auth
from elyments_chat.cli.chat import history_cmd, monitor_cmd, send_cmd
from elyments_chat.cli.directory import chats_cmd, profile, resolve_cmd
from elyments_chat.cli.pairing import pairing

main.add_command(auth)
main.add_command(chats_cmd)
main.add_command(resolve_cmd)
main.add_command(profile)
main.add_command(send_cmd)
main.add_command(history_cmd)
main.add_command(monitor_cmd)
main.add_command(pairing)


if __name__ == "__main__":
    main()
