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
TokenClient component for the authorization_code and refresh_token grants.
"""

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from iden.config import ClientConfig
from iden.exceptions import OversizedResponseError, TokenExchangeError, TokenParseError
from iden.models import AuthRequestContext, ProviderMetadata, TokenResult
from iden.transport import DEFAULT_MAX_BYTES, fetch, parse_json_object
from iden.utils.logger import logger

tracer = trace.get_tracer(__name__)


def _describe(error: ValidationError) -> str:
    # Field locations and messages only; the input values may hold tokens
    return "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in error.errors())


class TokenClient:
    """
    Performs grant requests against the token endpoint.

    Neither operation retries. Authorization codes are single-use by protocol, so
    replaying one after the provider consumed it fails with ``invalid_grant``.
    """

    def __init__(self, client: httpx.AsyncClient, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        """
        Initialize the TokenClient.

        Args:
            client: The async HTTP client to use for requests.
            max_bytes: Largest token response accepted.
        """
        self.client = client
        self.max_bytes = max_bytes

    async def exchange_code(
        self,
        metadata: ProviderMetadata,
        config: ClientConfig,
        context: AuthRequestContext,
        code: str,
    ) -> TokenResult:
        """
        Exchanges an authorization code for tokens.

        The PKCE ``code_verifier`` is sent alongside the client secret when the
        authorization request carried a challenge.

        Args:
            metadata: Provider metadata holding the token endpoint.
            config: The client configuration (credentials and redirect URL).
            context: The authorization request the code answers.
            code: The authorization code from the callback.

        Returns:
            TokenResult: The parsed token response.

        Raises:
            TokenExchangeError: If the endpoint is unreachable or answers non-2xx.
            TokenParseError: If the response is not JSON or lacks ``access_token``.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_url,
            "client_id": config.client_id,
            "client_secret": config.client_secret.get_secret_value(),
        }
        if context.code_verifier:
            data["code_verifier"] = context.code_verifier

        return await self._grant(metadata.token_endpoint, data)

    async def refresh(self, metadata: ProviderMetadata, config: ClientConfig, refresh_token: str) -> TokenResult:
        """
        Obtains fresh tokens with a refresh token.

        The result's ``refresh_token`` is None when the provider did not rotate it; the
        caller keeps the previous one in that case.

        Raises:
            TokenExchangeError: If the endpoint is unreachable or answers non-2xx.
            TokenParseError: If the response is not JSON or lacks ``access_token``.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret.get_secret_value(),
        }
        return await self._grant(metadata.token_endpoint, data)

    async def _grant(self, token_endpoint: str, data: dict[str, str]) -> TokenResult:
        grant_type = data["grant_type"]
        with tracer.start_as_current_span("oidc.token") as span:
            span.set_attribute("oauth.grant_type", grant_type)
            try:
                reply = await fetch(
                    self.client,
                    "POST",
                    token_endpoint,
                    max_bytes=self.max_bytes,
                    data=data,
                    headers={"Accept": "application/json"},
                )
            except (httpx.HTTPError, OversizedResponseError) as e:
                logger.error(f"Token request ({grant_type}) failed: {e}")
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise TokenExchangeError(f"Token request ({grant_type}) failed: {e}") from e

            if not reply.ok:
                logger.error(f"Token request ({grant_type}) failed with status {reply.status_code}")
                span.set_status(Status(StatusCode.ERROR, f"HTTP {reply.status_code}"))
                raise TokenExchangeError(
                    f"Token request ({grant_type}) failed with status {reply.status_code}: {reply.text}",
                    status=reply.status_code,
                    body=reply.text,
                )

            try:
                result = TokenResult(**parse_json_object(reply.content))
            except ValidationError as e:
                span.set_status(Status(StatusCode.ERROR, "invalid token response"))
                raise TokenParseError(f"Invalid token response: {_describe(e)}") from e
            except ValueError as e:
                span.set_status(Status(StatusCode.ERROR, "malformed token response"))
                raise TokenParseError(f"Malformed token response: {e}") from e

            logger.info(
                f"Token request ({grant_type}) succeeded; "
                f"id_token={'yes' if result.id_token else 'no'}, "
                f"refresh_token={'yes' if result.refresh_token else 'no'}"
            )
            span.set_status(Status(StatusCode.OK))
            return result
