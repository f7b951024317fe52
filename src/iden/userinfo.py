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
UserInfoFetcher component for reading profile claims with an access token.
"""

import httpx
from opentelemetry import trace

from iden.exceptions import OversizedResponseError, UserInfoError
from iden.models import ProviderMetadata, UserInfo
from iden.transport import DEFAULT_MAX_BYTES, fetch, parse_json_object
from iden.utils.logger import logger

tracer = trace.get_tracer(__name__)


class UserInfoFetcher:
    def __init__(self, client: httpx.AsyncClient, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.client = client
        self.max_bytes = max_bytes

    async def fetch(self, metadata: ProviderMetadata, access_token: str) -> UserInfo:
        """
        Returns the userinfo claims, unfiltered.

        Raises:
            UserInfoError: If the request fails, is not 2xx, or the body is not a JSON object.
        """
        url = metadata.userinfo_endpoint
        with tracer.start_as_current_span("oidc.userinfo"):
            try:
                reply = await fetch(
                    self.client,
                    "GET",
                    url,
                    max_bytes=self.max_bytes,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
            except (httpx.HTTPError, OversizedResponseError) as e:
                logger.error(f"User info request failed: {e}")
                raise UserInfoError(f"User info request to {url} failed: {e}") from e

            if not reply.ok:
                logger.error(f"User info request failed with status {reply.status_code}")
                raise UserInfoError(f"User info request failed with status {reply.status_code}: {reply.text}")

            try:
                claims = parse_json_object(reply.content)
            except ValueError as e:
                raise UserInfoError(f"Malformed user info response: {e}") from e

            logger.debug(f"Fetched {len(claims)} user info claims")
            return claims
