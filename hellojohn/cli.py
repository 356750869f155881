"""CLI entry point for the HelloJohn auth client."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from . import __version__
from .callback import CallbackError, LocalhostCallbackServer
from .client import AuthClient
from .config import ConfigError, load_options
from .errors import HelloJohnError, MFARequiredError
from .output import OutputHandler
from .platform import WebBrowserNavigator

logger = logging.getLogger("hellojohn")

NOT_SIGNED_IN_HELP = "Run 'hellojohn login' to sign in."


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """HelloJohn - sign in to a HelloJohn identity provider from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def build_client(ctx: click.Context, **kwargs: Any) -> AuthClient:
    """Create an AuthClient from the environment, reporting config errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        options = load_options(ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
    # Short-lived process: refresh happens on demand
    options.auto_refresh = False
    return AuthClient.from_options(options, **kwargs)


def _format_expiry(expires_at: float | None) -> str | None:
    if expires_at is None:
        return None
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()


@main.command()
@click.option("--timeout", "-t", default=120, help="Seconds to wait for the browser")
@click.option("--scope", help="Scopes to request (default: openid profile email)")
@click.pass_context
def login(ctx: click.Context, timeout: int, scope: str | None) -> None:
    """Sign in through the browser (Authorization Code + PKCE).

    The redirect URI must be a loopback address registered for the client,
    e.g. HELLOJOHN_REDIRECT_URI=http://127.0.0.1:8765/callback.
    """
    output: OutputHandler = ctx.obj["output"]

    def show_url(url: str) -> None:
        click.echo(f"Open this URL to sign in:\n  {url}", err=True)

    client = build_client(ctx, navigator=WebBrowserNavigator(on_fallback=show_url))

    async def run() -> Any:
        async with LocalhostCallbackServer(client.redirect_uri, timeout=timeout) as server:
            await client.login_with_redirect(scope)
            if not ctx.obj["json_mode"]:
                click.echo("Waiting for the browser to complete sign-in...", err=True)
            callback_url = await server.wait_for_callback()
        return await client.handle_redirect_callback(callback_url)

    try:
        session = asyncio.run(run())
    except CallbackError as e:
        output.error(e, help_text="Check that the redirect URI is a free loopback address.")
    except HelloJohnError as e:
        output.error(e)
    finally:
        client.destroy()

    user = session.user if session else {}
    output.success(
        {"user": user},
        human_message=click.style(f"Signed in as {user.get('email') or user.get('sub')}", fg="green"),
    )


@main.command("login-password")
@click.option("--email", prompt=True, help="Account email")
@click.password_option("--password", confirmation_prompt=False, help="Account password")
@click.pass_context
def login_password(ctx: click.Context, email: str, password: str) -> None:
    """Sign in with email and password."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    try:
        profile = asyncio.run(client.login_with_credentials(email, password))
    except MFARequiredError as e:
        output.error(
            e,
            help_text=f"This account requires MFA. Challenge ID: {e.challenge_id}",
        )
    except HelloJohnError as e:
        output.error(e)
    finally:
        client.destroy()

    output.success(
        {"user": profile},
        human_message=click.style(f"Signed in as {profile.get('email', email)}", fg="green"),
    )


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the stored session."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    session = client.get_session()
    tokens = client.get_stored_tokens()
    authenticated = client.is_authenticated()
    client.destroy()

    if session is None:
        output.fields("Session", [("authenticated", False)])
        return

    output.fields(
        "Session",
        [
            ("authenticated", authenticated),
            ("subject", session.user.get("sub")),
            ("email", session.user.get("email")),
            ("expires_at", _format_expiry(session.expires_at)),
            ("refresh_token", bool(tokens and tokens.has_refresh_token())),
            ("scope", tokens.scope if tokens else None),
        ],
    )


@main.command()
@click.pass_context
def token(ctx: click.Context) -> None:
    """Print a valid access token, refreshing it if expired."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    try:
        access_token = asyncio.run(client.get_access_token())
    except HelloJohnError as e:
        output.error(e, help_text=NOT_SIGNED_IN_HELP)
    finally:
        client.destroy()

    output.success({"access_token": access_token}, human_message=access_token)


@main.command()
@click.pass_context
def whoami(ctx: click.Context) -> None:
    """Fetch the user profile from the provider."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    try:
        profile = asyncio.run(client.get_user())
    except HelloJohnError as e:
        output.error(e)
    finally:
        client.destroy()

    if profile is None:
        output.error(HelloJohnError("Not signed in", "no_token"), help_text=NOT_SIGNED_IN_HELP)
    output.success(profile)


@main.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Force a token refresh."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    try:
        asyncio.run(client.refresh_session())
    except HelloJohnError as e:
        output.error(e, help_text=NOT_SIGNED_IN_HELP)
    finally:
        client.destroy()

    session = client.get_session()
    expires_at = _format_expiry(session.expires_at if session else None)
    output.success(
        {"refreshed": True, "expires_at": expires_at},
        human_message=click.style(f"Token refreshed (expires {expires_at})", fg="green"),
    )


@main.command()
@click.option("--return-to", help="URL the provider should return to after logout")
@click.pass_context
def logout(ctx: click.Context, return_to: str | None) -> None:
    """Sign out and end the provider session."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)
    try:
        asyncio.run(client.logout(return_to))
    finally:
        client.destroy()
    output.success({"signed_out": True}, human_message=click.style("Signed out.", fg="green"))


@main.command("logout-all")
@click.pass_context
def logout_all(ctx: click.Context) -> None:
    """Sign out of every session on every device."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)
    try:
        asyncio.run(client.logout_all())
    finally:
        client.destroy()
    output.success(
        {"signed_out": True},
        human_message=click.style("Signed out of all sessions.", fg="green"),
    )


@main.command()
@click.pass_context
def revoke(ctx: click.Context) -> None:
    """Revoke the access token and sign out."""
    output: OutputHandler = ctx.obj["output"]
    client = build_client(ctx)

    had_tokens = client.get_stored_tokens() is not None
    try:
        asyncio.run(client.revoke_token())
    finally:
        client.destroy()

    if not had_tokens:
        output.success({"revoked": False}, human_message="No stored tokens to revoke.")
        return
    output.success({"revoked": True}, human_message=click.style("Token revoked.", fg="green"))


if __name__ == "__main__":
    main()
