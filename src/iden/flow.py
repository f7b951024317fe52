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
OIDC flow components for orchestrating the login and refresh flows.
"""

import hmac
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import anyio
import httpx
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from iden.authorization import AuthorizationRequestBuilder
from iden.callback import CallbackListener
from iden.config import ClientConfig
from iden.discovery import DiscoveryResolver
from iden.exceptions import (
    CallbackTimeoutError,
    ConfigError,
    IdTokenValidationError,
    ProviderCallbackError,
    StateMismatchError,
)
from iden.id_token import IdTokenValidator, JWKSSignatureVerifier, SignatureVerifier, decode_unverified
from iden.models import CallbackProviderError, CallbackTimeout, LoginResult, ProviderMetadata, TokenResult
from iden.token_client import TokenClient
from iden.userinfo import UserInfoFetcher
from iden.utils.logger import fingerprint, logger

tracer = trace.get_tracer(__name__)

AuthorizationUrlHandler = Callable[[str], None]


def _log_authorization_url(url: str) -> None:
    logger.info(f"Open this URL to log in: {url}")


def _with_bound_port(redirect_url: str, port: int) -> str:
    parts = urlsplit(redirect_url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    return urlunsplit((parts.scheme, f"{host}:{port}", parts.path, parts.query, parts.fragment))


def _log_refreshed_id_token(id_token: str) -> None:
    """Logs the header and main claims of a refreshed ID token. Its signature is not checked."""
    try:
        header, payload = decode_unverified(id_token)
    except IdTokenValidationError as e:
        logger.warning(f"Refreshed ID token could not be decoded: {e}")
        return

    sub = payload.get("sub")
    subject = fingerprint(sub) if isinstance(sub, str) else None
    logger.info(
        f"Refreshed ID token (unverified): alg={header.get('alg')} kid={header.get('kid')} "
        f"iss={payload.get('iss')} sub={subject} exp={payload.get('exp')}"
    )


class OIDCFlowAsync:
    """
    Async implementation of the relying-party flows (The Core).
    Handles resources via async context manager.

    Every value the flows produce (metadata, request context, tokens) is passed
    forward explicitly; nothing outlives the call that created it.
    """

    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient | None = None,
        signature_verifier: SignatureVerifier | None = None,
    ) -> None:
        """
        Initialize the OIDCFlowAsync.

        Args:
            config: The configuration object.
            client: External async client (optional). If not provided, one is created with
                `config.http_timeout` and closed on exit.
            signature_verifier: ID token signature strategy. Defaults to JWKS verification when
                `config.verify_signature` is set, otherwise no signature check.
        """
        self.config = config
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        if signature_verifier is None and config.verify_signature:
            signature_verifier = JWKSSignatureVerifier(
                self._client, config.allowed_algorithms, max_bytes=config.max_response_bytes
            )

        max_bytes = config.max_response_bytes
        self.discovery = DiscoveryResolver(self._client, max_bytes=max_bytes)
        self.token_client = TokenClient(self._client, max_bytes=max_bytes)
        self.userinfo = UserInfoFetcher(self._client, max_bytes=max_bytes)
        self.id_token_validator = IdTokenValidator(leeway=config.clock_skew_leeway, verifier=signature_verifier)

    async def __aenter__(self) -> "OIDCFlowAsync":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def _discover(self) -> ProviderMetadata:
        return await self.discovery.resolve(self.config.issuer, allow_insecure_http=self.config.unsafe_local_dev)

    async def login(self, on_authorization_url: AuthorizationUrlHandler | None = None) -> LoginResult:
        """
        Runs the Authorization Code flow end to end.

        The listener is bound before the authorization URL is handed to
        `on_authorization_url`, so the browser cannot race it.

        Args:
            on_authorization_url: Receives the authorization URL to display or open.
                Defaults to logging it.

        Returns:
            LoginResult: Tokens, validated ID token claims and userinfo claims.

        Raises:
            DiscoveryError: If provider metadata cannot be resolved.
            ListenerBindError: If the redirect address cannot be bound.
            ProviderCallbackError: If the provider redirected back with an error.
            CallbackTimeoutError: If no callback arrived in time.
            StateMismatchError: If the callback state differs from the one sent. No token request is made.
            TokenExchangeError: If the code exchange fails.
            TokenParseError: If the token response is malformed.
            IdTokenValidationError: If the ID token is missing or fails validation.
            UserInfoError: If the userinfo request fails.
        """
        config = self.config
        announce = on_authorization_url or _log_authorization_url

        with tracer.start_as_current_span("oidc.login"):
            metadata = await self._discover()

            async with CallbackListener(config.redirect_url, timeout=config.callback_timeout) as listener:
                if urlsplit(config.redirect_url).port == 0:
                    bound_url = _with_bound_port(config.redirect_url, listener.port)
                    config = config.model_copy(update={"redirect_url": bound_url})

                context = AuthorizationRequestBuilder.for_config(config).build(config, metadata)
                announce(context.authorization_url)
                result = await listener.wait()

            if isinstance(result, CallbackTimeout):
                raise CallbackTimeoutError(f"No authorization callback received within {config.callback_timeout:.0f}s")
            if isinstance(result, CallbackProviderError):
                logger.error(f"Authorization failed at the provider: {result.error}")
                raise ProviderCallbackError(result.error, result.description)

            if not hmac.compare_digest(result.state.encode("utf-8"), context.state.encode("utf-8")):
                logger.error("Callback state does not match the authorization request; possible forgery")
                raise StateMismatchError("Callback 'state' does not match the authorization request")

            tokens = await self.token_client.exchange_code(metadata, config, context, result.code)
            if not tokens.id_token:
                raise IdTokenValidationError("missing", "Token response did not include an id_token")

            claims = await self.id_token_validator.validate(tokens.id_token, context, metadata, config)
            userinfo = await self.userinfo.fetch(metadata, tokens.access_token)

            logger.info("Login completed")
            return LoginResult(tokens=tokens, claims=claims, userinfo=userinfo)

    async def refresh_flow(self) -> TokenResult:
        """
        Exchanges the configured refresh token for new tokens. No listener is involved.
        A refreshed ID token is decoded for the log only; it is not validated.

        Returns:
            TokenResult: The new tokens. Carries the previous refresh token when the provider did not rotate it.

        Raises:
            ConfigError: If no refresh token is configured.
            DiscoveryError: If provider metadata cannot be resolved.
            TokenExchangeError: If the refresh grant fails.
            TokenParseError: If the token response is malformed.
        """
        if self.config.refresh_token is None or not self.config.refresh_token.get_secret_value():
            raise ConfigError("The refresh flow requires a refresh token")
        previous = self.config.refresh_token.get_secret_value()

        with tracer.start_as_current_span("oidc.refresh"):
            metadata = await self._discover()
            tokens = await self.token_client.refresh(metadata, self.config, previous)
            if tokens.id_token:
                _log_refreshed_id_token(tokens.id_token)
            return tokens.with_previous_refresh_token(previous)


async def login(config: ClientConfig, on_authorization_url: AuthorizationUrlHandler | None = None) -> LoginResult:
    """Runs `OIDCFlowAsync.login` with a client owned for the duration of the call."""
    async with OIDCFlowAsync(config) as flow:
        return await flow.login(on_authorization_url)


async def refresh_flow(config: ClientConfig) -> TokenResult:
    """Runs `OIDCFlowAsync.refresh_flow` with a client owned for the duration of the call."""
    async with OIDCFlowAsync(config) as flow:
        return await flow.refresh_flow()


class OIDCFlow:
    """
    Sync facade for OIDCFlowAsync.

    Each call runs in its own event loop via `anyio.run`, so the HTTP client is
    created and closed inside that loop.
    """

    def __init__(self, config: ClientConfig) -> None:
        self.config = config

    def login(self, on_authorization_url: AuthorizationUrlHandler | None = None) -> LoginResult:
        return anyio.run(login, self.config, on_authorization_url)

    def refresh_flow(self) -> TokenResult:
        return anyio.run(refresh_flow, self.config)
