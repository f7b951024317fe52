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
Configuration for the iden package.
"""

from typing import Any
from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from iden.exceptions import ConfigError
from iden.models import CodeChallengeMethod

DEFAULT_REDIRECT_URL = "http://127.0.0.1:3030/callback"

# Authorization request parameters owned by the request builder
RESERVED_AUTH_PARAMS = frozenset(
    {"response_type", "client_id", "redirect_uri", "scope", "state", "nonce", "code_challenge", "code_challenge_method"}
)


def _require_absolute_url(v: str, schemes: tuple[str, ...]) -> str:
    parsed = urlparse(v)
    if parsed.scheme not in schemes or not parsed.hostname:
        raise ValueError(f"'{v}' is not an absolute {'/'.join(schemes)} URL")
    try:
        _ = parsed.port
    except ValueError as e:
        raise ValueError(f"'{v}' has an invalid port: {e}") from e
    return v


class ClientConfig(BaseSettings):
    """
    Configuration settings for one relying-party invocation.

    Frozen once constructed. Every field can also be supplied as an ``IDEN_<FIELD>``
    environment variable.

    Attributes:
        issuer (str): The OpenID Provider issuer URL.
        client_id (str): The registered client identifier.
        client_secret (SecretStr): The client secret. Protected from logging.
        redirect_url (str): Where the provider sends the browser back. Must point at this machine.
        scope (str): Space separated scopes to request.
        state (str | None): Caller supplied anti-CSRF value, used verbatim when set.
        refresh_token (SecretStr | None): Refresh token for the refresh-only flow.
    """

    model_config = SettingsConfigDict(
        env_prefix="IDEN_",
        case_sensitive=False,
        frozen=True,
    )

    issuer: str
    client_id: str
    client_secret: SecretStr
    redirect_url: str = DEFAULT_REDIRECT_URL
    scope: str = "openid"
    state: str | None = None
    refresh_token: SecretStr | None = None

    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for each outbound HTTP request.")
    callback_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the browser to hit the redirect URL."
    )
    clock_skew_leeway: int = Field(default=0, ge=0, description="Allowed clock skew in seconds for 'exp'.")
    unsafe_local_dev: bool = False
    use_pkce: bool = False
    code_challenge_method: CodeChallengeMethod = CodeChallengeMethod.S256
    verify_signature: bool = False
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    extra_auth_params: dict[str, str] = Field(default_factory=dict)
    max_response_bytes: int = Field(default=1_000_000, gt=0)
    open_browser: bool = True

    @field_validator("issuer")
    @classmethod
    def validate_issuer(cls, v: str) -> str:
        """Issuer must be an absolute URL. Scheme policy is applied in `enforce_https`."""
        v = v.strip()
        return _require_absolute_url(v, ("https", "http"))

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect_url(cls, v: str) -> str:
        """
        The redirect URL is served by the local plain-HTTP listener, so it needs a host we can bind.

        Raises:
            ValueError: If the URL is not absolute http or carries a malformed port.
        """
        v = v.strip()
        return _require_absolute_url(v, ("http",))

    @field_validator("client_id", "scope")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("extra_auth_params")
    @classmethod
    def validate_extra_auth_params(cls, v: dict[str, str]) -> dict[str, str]:
        clashes = sorted(RESERVED_AUTH_PARAMS.intersection(v))
        if clashes:
            raise ValueError(f"extra_auth_params may not override {', '.join(clashes)}")
        return v

    @model_validator(mode="after")
    def enforce_https(self) -> "ClientConfig":
        """
        Ensures that issuer uses HTTPS, unless strictly opted out for local dev.
        """
        if self.issuer.startswith("http://") and not self.unsafe_local_dev:
            raise ValueError("HTTPS is required for the issuer. Set 'unsafe_local_dev=True' only for local testing.")
        return self

    @classmethod
    def from_options(cls, **options: Any) -> "ClientConfig":
        """
        Builds a config from adapter-supplied options, skipping unset (None) values so
        defaults and environment variables still apply.

        Raises:
            ConfigError: If the options do not form a valid configuration.
        """
        try:
            return cls(**{k: v for k, v in options.items() if v is not None})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
