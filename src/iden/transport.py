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
Size-capped HTTP helpers shared by every outbound call to the provider.
"""

import json
from typing import Any, NamedTuple

import httpx

from iden.exceptions import OversizedResponseError

DEFAULT_MAX_BYTES = 1_000_000


class HttpReply(NamedTuple):
    """Status code and raw body of a fully read response."""

    status_code: int
    content: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


async def fetch(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_bytes: int = DEFAULT_MAX_BYTES,
    **kwargs: Any,
) -> HttpReply:
    """
    Performs a request and reads the body, refusing bodies over `max_bytes`.

    The body is read for every status so error responses stay available for diagnostics.

    Raises:
        OversizedResponseError: If Content-Length or the streamed body exceeds `max_bytes`.
        httpx.HTTPError: On network or protocol failures.
    """
    async with client.stream(method, url, **kwargs) as response:
        content_length = response.headers.get("Content-Length")
        if content_length:
            try:
                if int(content_length) > max_bytes:
                    raise OversizedResponseError(f"Response from {url} too large ({content_length} bytes)")
            except ValueError:
                pass

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                raise OversizedResponseError(f"Response from {url} too large")

        return HttpReply(response.status_code, bytes(content))


def parse_json_object(content: bytes) -> dict[str, Any]:
    """
    Parses a JSON object body.

    Raises:
        ValueError: If the body is not JSON or not a JSON object.
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
