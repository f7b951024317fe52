# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Command-line adapter.

Gathers options (falling back to ``IDEN_*`` environment variables), runs a flow
through `OIDCFlow` and prints the result as JSON on stdout. Everything meant
for the human (the authorization URL, errors) goes to stderr.

Typical usage::

    iden login --issuer https://accounts.example.com --client-id app \\
        --client-secret s3cr3t --scope openid --scope profile --scope email
    iden refresh --issuer https://accounts.example.com --client-id app \\
        --client-secret s3cr3t --refresh-token 1//0g...
"""

import webbrowser
from collections.abc import Callable
from typing import NoReturn

import typer

from iden import __version__
from iden.config import ClientConfig
from iden.exceptions import IdenError
from iden.flow import OIDCFlow
from iden.utils.logger import logger

app = typer.Typer(no_args_is_help=True, help="OpenID Connect relying-party client for the terminal.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"iden {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="Show the version and exit."
    ),
) -> None:
    """OpenID Connect relying-party client for the terminal."""


def _fail(exc: IdenError) -> NoReturn:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=exc.exit_code)


def _join_scopes(scope: list[str] | None) -> str | None:
    if not scope:
        return None
    return " ".join(part for item in scope for part in item.split())


def _announcer(open_browser: bool) -> Callable[[str], None]:
    def announce(url: str) -> None:
        typer.echo("Open the following URL in your browser to log in:", err=True)
        typer.echo(url, err=True)
        if open_browser and not webbrowser.open(url):
            logger.warning("Could not open a browser; open the URL manually")

    return announce


@app.command("login")
def login_command(
    issuer: str | None = typer.Option(None, "--issuer", help="OpenID Provider issuer URL."),
    client_id: str | None = typer.Option(None, "--client-id", help="Registered client identifier."),
    client_secret: str | None = typer.Option(None, "--client-secret", help="Client secret."),
    redirect_url: str | None = typer.Option(
        None, "--redirect-url", help="Local redirect URL (default http://127.0.0.1:3030/callback)."
    ),
    scope: list[str] | None = typer.Option(None, "--scope", help="Scope to request. Repeat for several."),
    state: str | None = typer.Option(None, "--state", help="Use this state value instead of a generated one."),
    pkce: bool | None = typer.Option(None, "--pkce/--no-pkce", help="Send a PKCE code challenge."),
    verify_signature: bool | None = typer.Option(
        None, "--verify-signature/--no-verify-signature", help="Verify the ID token signature against the JWKS."
    ),
    unsafe_local_dev: bool | None = typer.Option(
        None, "--unsafe-local-dev", help="Allow a plain-HTTP issuer. Local testing only."
    ),
    callback_timeout: float | None = typer.Option(
        None, "--callback-timeout", help="Seconds to wait for the browser redirect."
    ),
    no_browser: bool = typer.Option(False, "--no-browser", help="Only print the authorization URL."),
) -> None:
    """Run the Authorization Code flow and print tokens, ID token claims and userinfo.

    Example::

        iden login --issuer https://accounts.example.com --client-id app --client-secret s3cr3t
    """
    try:
        config = ClientConfig.from_options(
            issuer=issuer,
            client_id=client_id,
            client_secret=client_secret,
            redirect_url=redirect_url,
            scope=_join_scopes(scope),
            state=state,
            use_pkce=pkce,
            verify_signature=verify_signature,
            unsafe_local_dev=unsafe_local_dev,
            callback_timeout=callback_timeout,
            open_browser=False if no_browser else None,
        )
        result = OIDCFlow(config).login(_announcer(config.open_browser))
    except IdenError as e:
        _fail(e)

    typer.echo(result.model_dump_json(indent=2))


@app.command("refresh")
def refresh_command(
    issuer: str | None = typer.Option(None, "--issuer", help="OpenID Provider issuer URL."),
    client_id: str | None = typer.Option(None, "--client-id", help="Registered client identifier."),
    client_secret: str | None = typer.Option(None, "--client-secret", help="Client secret."),
    refresh_token: str | None = typer.Option(None, "--refresh-token", help="Refresh token to exchange."),
    unsafe_local_dev: bool | None = typer.Option(
        None, "--unsafe-local-dev", help="Allow a plain-HTTP issuer. Local testing only."
    ),
) -> None:
    """Exchange a refresh token for new tokens. No browser is involved."""
    try:
        config = ClientConfig.from_options(
            issuer=issuer,
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            unsafe_local_dev=unsafe_local_dev,
        )
        tokens = OIDCFlow(config).refresh_flow()
    except IdenError as e:
        _fail(e)

    typer.echo(tokens.model_dump_json(indent=2))
