"""Command-line interface for the PKCE client.

Drives the redirect flow from a terminal: ``login`` prints (and opens)
the authorization URL, and ``callback`` completes it in a later process
using the encrypted persistent storage.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer

from iam_pkce import __version__
from iam_pkce.config import Config, ConfigError, load_config
from iam_pkce.exceptions import IamAuthError, StorageError
from iam_pkce.logging_config import get_logger, setup_logging
from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
from iam_pkce.oauth.interaction import Navigator, WebBrowserNavigator
from iam_pkce.storage import create_storage

T = TypeVar("T")

app = typer.Typer(
    name="iam-pkce",
    help="OAuth2/OIDC Authorization Code + PKCE client",
    add_completion=False,
)


class EchoNavigator(Navigator):
    """Prints the authorization URL, optionally opening the system browser too."""

    def __init__(self, open_browser: bool) -> None:
        self._browser = WebBrowserNavigator() if open_browser else None

    def navigate(self, url: str) -> None:
        typer.echo(url)
        if self._browser is not None:
            self._browser.navigate(url)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"iam-pkce version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="JSON or YAML settings file"
    ),
    server_url: str | None = typer.Option(None, "--server-url", help="Identity provider base URL"),
    client_id: str | None = typer.Option(None, "--client-id", help="OAuth client identifier"),
    redirect_uri: str | None = typer.Option(
        None, "--redirect-uri", help="Registered redirect URI"
    ),
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="Log level override"),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """OAuth2/OIDC PKCE client CLI."""
    ctx.obj = {
        "config_path": config_path,
        "cli_args": {
            "server_url": server_url,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "log_level": log_level,
        },
    }


def _load(ctx: typer.Context) -> Config:
    try:
        config = load_config(path=ctx.obj["config_path"], cli_args=ctx.obj["cli_args"])
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    setup_logging(config)
    return config


def _build_flow(config: Config, navigator: Navigator | None = None) -> OAuth2AuthorizationCodeFlow:
    encryption_key = (
        config.token_encryption_key.get_secret_value() if config.token_encryption_key else None
    )
    storage = create_storage(encryption_key=encryption_key, file_path=config.token_store_path)
    if config.token_store_path is None:
        get_logger(__name__).warning(
            "No token_store_path configured; credentials will not outlive this command"
        )
    return OAuth2AuthorizationCodeFlow.from_config(config, storage=storage, navigator=navigator)


def _run(
    config: Config,
    action: Callable[[OAuth2AuthorizationCodeFlow], Awaitable[T]],
    navigator: Navigator | None = None,
) -> T:
    async def runner() -> T:
        flow = _build_flow(config, navigator)
        try:
            return await action(flow)
        finally:
            await flow.close()

    try:
        return asyncio.run(runner())
    except (IamAuthError, StorageError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None


def _parse_params(params: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in params:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {item!r}", param_hint="--param")
        parsed[key] = value
    return parsed


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True))


@app.command()
def discover(ctx: typer.Context) -> None:
    """Print the provider's OIDC discovery document."""
    config = _load(ctx)
    document = _run(config, lambda flow: flow.get_discovery())
    _echo_json(document.model_dump(exclude_none=True))


@app.command()
def login(
    ctx: typer.Context,
    open_browser: bool = typer.Option(
        True, "--browser/--no-browser", help="Open the system browser"
    ),
    param: list[str] = typer.Option(
        [], "--param", "-p", help="Extra authorization parameter as key=value"
    ),
) -> None:
    """Start a redirect login and print the authorization URL."""
    config = _load(ctx)
    extra = _parse_params(param)
    _run(config, lambda flow: flow.signin_redirect(extra or None), EchoNavigator(open_browser))


@app.command()
def callback(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Full redirect URL received from the provider"),
) -> None:
    """Complete a redirect login from its callback URL."""
    config = _load(ctx)
    tokens = _run(config, lambda flow: flow.handle_callback(url))
    expires = tokens.expires_at.isoformat() if tokens.expires_at else "unknown"
    typer.echo(f"Authenticated (access token expires {expires})")


@app.command()
def token(ctx: typer.Context) -> None:
    """Print a valid access token, refreshing it if needed."""
    config = _load(ctx)
    access_token = _run(config, lambda flow: flow.get_valid_access_token())
    if access_token is None:
        typer.echo("Not authenticated", err=True)
        raise typer.Exit(code=1)
    typer.echo(access_token)


@app.command()
def userinfo(ctx: typer.Context) -> None:
    """Print the signed-in user's profile."""
    config = _load(ctx)
    _echo_json(_run(config, lambda flow: flow.get_user_info()))


@app.command()
def logout(ctx: typer.Context) -> None:
    """Forget all stored credentials."""
    config = _load(ctx)

    async def clear(flow: OAuth2AuthorizationCodeFlow) -> None:
        flow.clear_tokens()

    _run(config, clear)
    typer.echo("Logged out")


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"iam-pkce version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
