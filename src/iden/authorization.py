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
Builds the browser-facing authorization request.
"""

import base64
import hashlib
import secrets
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from iden.config import ClientConfig
from iden.models import AuthRequestContext, CodeChallengeMethod, ProviderMetadata

# 32 bytes -> 256 bits of entropy, 43 url-safe characters
TOKEN_BYTES = 32


def generate_token() -> str:
    """Unguessable url-safe value used for state and nonce."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_pkce_pair(method: CodeChallengeMethod = CodeChallengeMethod.S256) -> tuple[str, str]:
    """
    Generate a PKCE code_verifier and code_challenge.

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from the unreserved set
    code_verifier = secrets.token_urlsafe(64)[:128]
    if method is CodeChallengeMethod.PLAIN:
        return code_verifier, code_verifier
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


class AuthorizationRequestBuilder:
    """
    Assembles the authorization URL plus the state and nonce it commits to.

    Attributes:
        code_challenge_method (CodeChallengeMethod | None): PKCE method, or None to send no challenge.
    """

    def __init__(self, code_challenge_method: CodeChallengeMethod | None = None) -> None:
        self.code_challenge_method = code_challenge_method

    @classmethod
    def for_config(cls, config: ClientConfig) -> "AuthorizationRequestBuilder":
        return cls(config.code_challenge_method if config.use_pkce else None)

    def build(self, config: ClientConfig, metadata: ProviderMetadata) -> AuthRequestContext:
        """
        Builds a fresh authorization request.

        A caller supplied `config.state` is used verbatim; otherwise one is generated.
        The nonce is always generated here and cannot be supplied by the caller.

        Args:
            config: The client configuration.
            metadata: The discovered provider metadata.

        Returns:
            AuthRequestContext: state, nonce, URL and (with PKCE) the code verifier.
        """
        state = config.state or generate_token()
        nonce = generate_token()

        params: dict[str, str] = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_url,
            "scope": config.scope,
            "state": state,
            "nonce": nonce,
        }

        code_verifier: str | None = None
        if self.code_challenge_method is not None:
            code_verifier, code_challenge = generate_pkce_pair(self.code_challenge_method)
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = self.code_challenge_method.value

        params.update(config.extra_auth_params)

        # Keep any query the provider already put on its endpoint
        scheme, netloc, path, query, fragment = urlsplit(metadata.authorization_endpoint)
        query_items = parse_qsl(query, keep_blank_values=True) + list(params.items())
        authorization_url = urlunsplit((scheme, netloc, path, urlencode(query_items), fragment))

        return AuthRequestContext(
            state=state,
            nonce=nonce,
            authorization_url=authorization_url,
            code_verifier=code_verifier,
            code_challenge_method=self.code_challenge_method,
        )
