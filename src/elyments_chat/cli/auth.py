"""CLI: elyments auth login|status|logout|refresh"""

from typing import Optional

import click
from rich.console import Console

from elyments_chat.errors import AuthError

console = Console()


def _load_config():
    from elyments_chat.cli.main import _load_config
    return _load_config()


def _get_client(require_login: bool = True):
    from elyments_chat.cli.main import _get_client
    return _get_client(require_login)


def _run(coro):
    from elyments_chat.cli.main import _run
    return _run(coro)


@click.group()
def auth():
    """Authentication commands."""


@auth.command("login")
@click.option("--country-code", default=None, help="Dialling code, e.g. 91")
@click.option("--phone", default=None, help="Mobile number")
def auth_login(country_code: Optional[str], phone: Optional[str]):
    """Log in with a one-time password sent by SMS."""

    async def _login():
        cfg = _load_config()
        client = _get_client(require_login=False)
        try:
            cc = country_code or cfg.country_code or click.prompt("Country code", default="91")
            number = phone or cfg.phone_number or click.prompt("Mobile number")

            with console.status("Requesting OTP..."):
                await client.auth.request_otp(cc, number)
            console.print("[green]OTP sent! Check your phone.[/green]")

            otp = click.prompt("OTP")
            with console.status("Verifying..."):
                session = await client.auth.verify_otp(cc, number, otp)
            console.print(f"[green]Logged in (user ID: {session.user_id})[/green]")
            console.print(f"[dim]Credentials saved to {client.store.directory}[/dim]")
        except AuthError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    _run(_login())


@auth.command("status")
def auth_status():
    """Show current auth status."""
    client = _get_client(require_login=False)
    session = client.store.load_session()
    if session is None:
        console.print("[yellow]Not logged in. Run `elyments auth login`.[/yellow]")
        return
    expiring = client.sessions.is_expiring(session.access_token)
    state = "[yellow]access token expiring[/yellow]" if expiring else "[green]valid[/green]"
    console.print(f"[green]Logged in[/green] as {session.user_id} ({state}, saved {session.saved_at:%Y-%m-%d %H:%M})")
    console.print(f"Sender name: {client.sender_name}")


@auth.command("refresh")
def auth_refresh():
    """Refresh the session tokens now."""

    async def _refresh():
        client = _get_client()
        try:
            with console.status("Refreshing..."):
                session = await client.sessions.refresh()
            console.print(f"[green]Session refreshed for {session.user_id}[/green]")
        except AuthError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    _run(_refresh())


@auth.command("logout")
@click.option("--all", "clear_all", is_flag=True, help="Also forget the device identity and profile")
def auth_logout(clear_all: bool):
    """Clear saved credentials."""
    client = _get_client(require_login=False)
    if clear_all:
        client.store.clear()
    else:
        client.logout()
    console.print("[green]Logged out.[/green]")
