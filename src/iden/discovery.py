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
Discovery component for fetching the provider's metadata document.
"""

from urllib.parse import urlparse

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from iden.exceptions import DiscoveryError, OversizedResponseError
from iden.models import ProviderMetadata
from iden.transport import DEFAULT_MAX_BYTES, fetch, parse_json_object
from iden.utils.logger import logger

tracer = trace.get_tracer(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


def discovery_url(issuer: str) -> str:
    """Returns the discovery document URL for `issuer`."""
    return f"{issuer.rstrip('/')}{WELL_KNOWN_PATH}"


class DiscoveryResolver:
    """
    Fetches the Identity Provider's configuration.

    Nothing is cached: metadata lives for one invocation and is owned by the caller.
    Failures are terminal; there are no retries at this layer.
    """

    def __init__(self, client: httpx.AsyncClient, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        """
        Initialize the DiscoveryResolver.

        Args:
            client: The async HTTP client to use for requests.
            max_bytes: Largest discovery document accepted.
        """
        self.client = client
        self.max_bytes = max_bytes

    async def resolve(self, issuer: str, allow_insecure_http: bool = False) -> ProviderMetadata:
        """
        Fetches and parses the discovery document for `issuer`.

        Args:
            issuer: Absolute HTTPS issuer URL.
            allow_insecure_http: Accept an http:// issuer (explicit local development only).

        Returns:
            ProviderMetadata: The four endpoints the relying party needs.

        Raises:
            DiscoveryError: If the issuer is not acceptable, the request fails, the response is not 2xx,
                the body is not a JSON object, or a required endpoint is missing or not a URL.
        """
        parsed = urlparse(issuer)
        allowed = ("https", "http") if allow_insecure_http else ("https",)
        if parsed.scheme not in allowed or not parsed.netloc:
            raise DiscoveryError(f"Issuer must be an absolute {' or '.join(allowed)} URL, got '{issuer}'")

        url = discovery_url(issuer)
        with tracer.start_as_current_span("oidc.discovery") as span:
            span.set_attribute("url.full", url)
            logger.debug(f"Fetching provider metadata from {url}")

            try:
                reply = await fetch(self.client, "GET", url, max_bytes=self.max_bytes)
            except (httpx.HTTPError, OversizedResponseError) as e:
                logger.error(f"Discovery request to {url} failed: {e}")
                raise DiscoveryError(f"Failed to fetch provider metadata from {url}: {e}") from e

            if not reply.ok:
                logger.error(f"Discovery returned HTTP {reply.status_code}")
                raise DiscoveryError(f"Provider metadata request to {url} returned HTTP {reply.status_code}")

            try:
                metadata = ProviderMetadata(**parse_json_object(reply.content))
            except ValueError as e:
                # pydantic's ValidationError is a ValueError too, so this also covers missing endpoints
                kind = "Invalid" if isinstance(e, ValidationError) else "Malformed"
                raise DiscoveryError(f"{kind} provider metadata from {url}: {e}") from e

            if metadata.issuer and metadata.issuer.rstrip("/") != issuer.rstrip("/"):
                logger.warning(f"Provider metadata issuer '{metadata.issuer}' differs from configured '{issuer}'")

            logger.info(f"Discovered provider endpoints for {issuer}")
            return metadata
