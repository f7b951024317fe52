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
Custom exceptions for the iden package.

Every error carries a class-level ``exit_code`` so the command-line adapter can
map a failed invocation to a distinct process exit status.
"""


class IdenError(Exception):
    """Base exception for all iden errors."""

    exit_code: int = 1


class ConfigError(IdenError):
    """Raised when the client configuration is invalid (malformed URL, missing refresh token, ...)."""

    exit_code = 2


class DiscoveryError(IdenError):
    """Raised when the provider metadata document cannot be fetched or parsed."""

    exit_code = 3


class ListenerBindError(IdenError):
    """Raised when the local callback listener cannot bind its socket."""

    exit_code = 4


class ProviderCallbackError(IdenError):
    """
    Raised when the provider redirected back with an ``error`` parameter.

    Attributes:
        error (str): The OAuth2 error code (e.g. ``access_denied``).
        description (str | None): The optional ``error_description``.
    """

    exit_code = 5

    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        message = f"Provider returned error '{error}'"
        if description:
            message += f": {description}"
        super().__init__(message)


class StateMismatchError(IdenError):
    """Raised when the callback ``state`` does not match the one sent. Treated as a potential forgery."""

    exit_code = 6


class CallbackTimeoutError(IdenError):
    """Raised when no callback arrived before the listener deadline."""

    exit_code = 7


class TokenExchangeError(IdenError):
    """
    Raised when the token endpoint rejects a grant or cannot be reached.

    Attributes:
        status (int | None): The HTTP status code, or None for network failures.
        body (str): The raw response body, kept for diagnostics.
    """

    exit_code = 8

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class TokenParseError(IdenError):
    """Raised when a token endpoint response is not valid JSON or lacks ``access_token``."""

    exit_code = 9


class IdTokenValidationError(IdenError):
    """
    Raised when an ID token fails structural or claim validation.

    Attributes:
        reason (str): Which check failed (``malformed``, ``exp``, ``iss``, ``aud``, ``nonce``,
            ``signature`` or ``missing``).
    """

    exit_code = 10

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"ID token validation failed: {reason}")


class UserInfoError(IdenError):
    """Raised when the userinfo endpoint fails or returns malformed claims."""

    exit_code = 11


class OversizedResponseError(IdenError):
    """Raised when an HTTP response is too large."""
