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
IdTokenValidator component for decoding ID tokens and checking their claims.

Signature verification is a pluggable strategy. The default, `UnverifiedSignature`,
checks nothing: without it the claims below are only as trustworthy as the TLS
channel to the token endpoint. `JWKSSignatureVerifier` closes that gap.
"""

import hmac
import time
from typing import Any, Protocol, cast

import httpx
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import BadSignatureError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from iden.config import ClientConfig
from iden.exceptions import IdTokenValidationError, OversizedResponseError
from iden.models import AuthRequestContext, IdTokenClaims, ProviderMetadata
from iden.transport import DEFAULT_MAX_BYTES, fetch, parse_json_object
from iden.utils.logger import fingerprint, logger

tracer = trace.get_tracer(__name__)


def decode_unverified(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Decodes the header and payload of a compact JWS without checking the signature.

    Returns:
        A tuple of ``(header, payload)``.

    Raises:
        IdTokenValidationError: reason ``malformed`` if the token is not three base64url JSON segments.
    """
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise IdTokenValidationError("malformed", "ID token is not a compact JWS (expected 3 segments)")

    try:
        header = json_loads(urlsafe_b64decode(to_bytes(parts[0])).decode("utf-8"))
        payload = json_loads(urlsafe_b64decode(to_bytes(parts[1])).decode("utf-8"))
    except (ValueError, TypeError) as e:
        raise IdTokenValidationError("malformed", f"ID token segments are not base64url JSON: {e}") from e

    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise IdTokenValidationError("malformed", "ID token header and payload must be JSON objects")
    return header, payload


class SignatureVerifier(Protocol):
    """Strategy that verifies an ID token signature before its claims are trusted."""

    async def verify(self, token: str, header: dict[str, Any], metadata: ProviderMetadata) -> None:
        """
        Raises:
            IdTokenValidationError: reason ``signature`` when the signature is not acceptable.
        """
        ...


class UnverifiedSignature:
    """Accepts every signature. The claim checks still run."""

    async def verify(self, token: str, header: dict[str, Any], metadata: ProviderMetadata) -> None:
        logger.debug(f"ID token signature ({header.get('alg', 'none')}) not verified")


class JWKSSignatureVerifier:
    """
    Verifies the signature against the provider's published keys (``jwks_uri``).

    Attributes:
        allowed_algorithms (list[str]): Accepted JWS algorithms; anything else is rejected.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        allowed_algorithms: list[str],
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.client = client
        self.allowed_algorithms = allowed_algorithms
        self.max_bytes = max_bytes
        # A dedicated JsonWebToken instance rejects algorithms outside the allow-list
        self.jwt = JsonWebToken(allowed_algorithms)

    async def _fetch_jwks(self, jwks_uri: str) -> dict[str, Any]:
        try:
            reply = await fetch(self.client, "GET", jwks_uri, max_bytes=self.max_bytes)
        except (httpx.HTTPError, OversizedResponseError) as e:
            raise IdTokenValidationError("signature", f"Failed to fetch JWKS from {jwks_uri}: {e}") from e
        if not reply.ok:
            raise IdTokenValidationError("signature", f"JWKS request to {jwks_uri} returned HTTP {reply.status_code}")
        try:
            return parse_json_object(reply.content)
        except ValueError as e:
            raise IdTokenValidationError("signature", f"Malformed JWKS from {jwks_uri}: {e}") from e

    async def verify(self, token: str, header: dict[str, Any], metadata: ProviderMetadata) -> None:
        if header.get("alg") not in self.allowed_algorithms:
            raise IdTokenValidationError("signature", f"Algorithm '{header.get('alg')}' is not allowed")

        jwks = await self._fetch_jwks(metadata.jwks_uri)
        try:
            # Cast to Any to bypass MyPy overload confusion in authlib stubs
            cast("Any", self.jwt).decode(token, jwks)
        except BadSignatureError as e:
            raise IdTokenValidationError("signature", f"Invalid signature: {e}") from e
        except (JoseError, ValueError) as e:
            # authlib raises ValueError when no key in the set matches the token's kid
            raise IdTokenValidationError("signature", f"Signature verification failed: {e}") from e
        logger.debug("ID token signature verified against provider JWKS")


class IdTokenValidator:
    """
    Validates an ID token against the login attempt that requested it.

    Attributes:
        leeway (int): Acceptable clock skew in seconds for ``exp``.
        verifier (SignatureVerifier): Signature strategy; defaults to `UnverifiedSignature`.
    """

    def __init__(self, leeway: int = 0, verifier: SignatureVerifier | None = None) -> None:
        self.leeway = leeway
        self.verifier: SignatureVerifier = verifier or UnverifiedSignature()

    async def validate(
        self,
        id_token: str,
        context: AuthRequestContext,
        metadata: ProviderMetadata,
        config: ClientConfig,
    ) -> IdTokenClaims:
        """
        Decodes the token and checks, in order and failing on the first violation:
        ``exp`` in the future, ``iss`` equals the configured issuer, ``aud`` contains the
        client id, ``nonce`` equals the one sent.

        Args:
            id_token: Compact serialized ID token.
            context: The authorization request (holds the nonce).
            metadata: Provider metadata (holds ``jwks_uri`` for signature strategies).
            config: The client configuration (issuer and client id).

        Returns:
            IdTokenClaims: The token's claims.

        Raises:
            IdTokenValidationError: With ``reason`` naming the failed check.
        """
        with tracer.start_as_current_span("oidc.validate_id_token") as span:
            try:
                header, payload = decode_unverified(id_token)
                await self.verifier.verify(id_token, header, metadata)
                self._check_claims(payload, context, config)
                try:
                    claims = IdTokenClaims(**payload)
                except ValidationError as e:
                    raise IdTokenValidationError("malformed", f"ID token claims are malformed: {e}") from e
            except IdTokenValidationError as e:
                logger.warning(f"ID token rejected ({e.reason}): {e}")
                span.set_attribute("oidc.failed_check", e.reason)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            subject = fingerprint(claims.sub)
            logger.info(f"ID token validated for subject {subject}")
            span.set_attribute("enduser.id", subject)
            span.set_status(Status(StatusCode.OK))
            return claims

    def _check_claims(self, payload: dict[str, Any], context: AuthRequestContext, config: ClientConfig) -> None:
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, int | float):
            raise IdTokenValidationError("exp", "ID token has no numeric 'exp' claim")
        if exp <= time.time() - self.leeway:
            raise IdTokenValidationError("exp", "ID token has expired")

        iss = payload.get("iss")
        if not isinstance(iss, str) or iss != config.issuer:
            raise IdTokenValidationError("iss", f"ID token issuer '{iss}' does not match '{config.issuer}'")

        aud = payload.get("aud")
        audiences = [aud] if isinstance(aud, str) else aud if isinstance(aud, list) else []
        if config.client_id not in audiences:
            raise IdTokenValidationError("aud", "ID token audience does not contain the client id")

        nonce = payload.get("nonce")
        if nonce is None:
            raise IdTokenValidationError("nonce", "ID token has no 'nonce' claim but one was sent")
        if not isinstance(nonce, str) or not hmac.compare_digest(nonce.encode("utf-8"), context.nonce.encode("utf-8")):
            raise IdTokenValidationError("nonce", "ID token nonce does not match the request")
