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
Data models for the iden package.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

UserInfo = dict[str, Any]


class CodeChallengeMethod(StrEnum):
    S256 = "S256"
    PLAIN = "plain"


class ProviderMetadata(BaseModel):
    """
    Provider metadata from .well-known/openid-configuration.

    Only the endpoints the relying party needs are kept; everything else in the
    document is ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str | None = Field(default=None, description="The issuer the provider claims to be.")
    authorization_endpoint: str = Field(..., description="Browser-facing authorization endpoint.")
    token_endpoint: str = Field(..., description="The token endpoint URL.")
    userinfo_endpoint: str = Field(..., description="The userinfo endpoint URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")

    @field_validator("authorization_endpoint", "token_endpoint", "userinfo_endpoint", "jwks_uri")
    @classmethod
    def validate_endpoint_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("https", "http") or not parsed.netloc:
            raise ValueError(f"'{v}' is not an absolute URL")
        return v


class AuthRequestContext(BaseModel):
    """
    Everything generated for one login attempt.

    Attributes:
        state (str): Anti-CSRF value; the callback must echo it byte-for-byte.
        nonce (str): Anti-replay value; the ID token's ``nonce`` claim must equal it.
        authorization_url (str): The URL the user opens in a browser.
        code_verifier (str | None): PKCE verifier, sent with the code exchange. Hidden from repr.
        code_challenge_method (CodeChallengeMethod | None): The PKCE method used, if any.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str
    authorization_url: str
    code_verifier: str | None = Field(default=None, repr=False)
    code_challenge_method: CodeChallengeMethod | None = None


class CallbackSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["success"] = "success"
    code: str = Field(..., repr=False)
    state: str


class CallbackProviderError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["provider_error"] = "provider_error"
    error: str
    description: str | None = None


class CallbackTimeout(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["timeout"] = "timeout"


CallbackResult = Annotated[CallbackSuccess | CallbackProviderError | CallbackTimeout, Field(discriminator="kind")]


class TokenResult(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        token_type (str): The type of the token. Defaults to "Bearer" when the provider omits it.
        expires_in (int | None): The lifetime in seconds of the access token.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The ID token, if issued.
        scope (str | None): The granted scope when it differs from the requested one.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(..., repr=False)
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = Field(default=None, repr=False)
    id_token: str | None = Field(default=None, repr=False)
    scope: str | None = None

    def with_previous_refresh_token(self, previous: str) -> "TokenResult":
        """Keeps `previous` when the provider did not rotate the refresh token."""
        if self.refresh_token:
            return self
        return self.model_copy(update={"refresh_token": previous})


class IdTokenClaims(BaseModel):
    """
    Claims of a validated ID token. Provider specific claims are passed through.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    iss: str
    sub: str
    aud: str | list[str]
    exp: int | float
    iat: int | float
    nonce: str | None = None

    @property
    def audiences(self) -> list[str]:
        return [self.aud] if isinstance(self.aud, str) else list(self.aud)


class LoginResult(BaseModel):
    """Everything a successful login produces."""

    model_config = ConfigDict(frozen=True)

    tokens: TokenResult
    claims: IdTokenClaims
    userinfo: UserInfo
