# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import threading
import time
from collections.abc import Callable, Generator
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt
from pydantic import SecretStr

from iden.config import ClientConfig
from iden.models import AuthRequestContext, ProviderMetadata

ISSUER = "https://example.test"
CLIENT_ID = "myclientid"
CLIENT_SECRET = "myclientsecret"


class ProviderStub:
    """
    In-process OpenID Provider served through httpx.MockTransport.

    Each endpoint's status and body can be changed per test; every request is recorded.
    """

    def __init__(self, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.discovery_status = 200
        self.discovery_body: Any = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "jwks_uri": f"{issuer}/jwks",
            "response_types_supported": ["code"],
        }
        self.token_status = 200
        self.token_body: Any = {"access_token": "tok1", "token_type": "Bearer", "expires_in": 3600}
        self.userinfo_status = 200
        self.userinfo_body: Any = {"sub": "user-123", "email": "jane@example.test", "name": "Jane"}
        self.jwks_body: Any = {"keys": []}
        self.requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return self._reply(self.discovery_status, self.discovery_body)
        if path == "/token":
            return self._reply(self.token_status, self.token_body)
        if path == "/userinfo":
            return self._reply(self.userinfo_status, self.userinfo_body)
        if path == "/jwks":
            return self._reply(200, self.jwks_body)
        return httpx.Response(404)

    @staticmethod
    def _reply(status: int, body: Any) -> httpx.Response:
        if isinstance(body, bytes):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decodes a form-encoded request body into single values."""
    return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def metadata() -> ProviderMetadata:
    return ProviderMetadata(
        issuer=ISSUER,
        authorization_endpoint=f"{ISSUER}/authorize",
        token_endpoint=f"{ISSUER}/token",
        userinfo_endpoint=f"{ISSUER}/userinfo",
        jwks_uri=f"{ISSUER}/jwks",
    )


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=SecretStr(CLIENT_SECRET),
        redirect_url="http://127.0.0.1:0/callback",
        scope="openid profile email",
        callback_timeout=5,
    )


@pytest.fixture
def auth_context() -> AuthRequestContext:
    return AuthRequestContext(
        state="state-abc",
        nonce="nonce-xyz",
        authorization_url=f"{ISSUER}/authorize?state=state-abc&nonce=nonce-xyz",
    )


@pytest.fixture(scope="session")
def key_pair() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def jwks(key_pair: Any) -> dict[str, Any]:
    return {"keys": [key_pair.as_dict(is_private=False)]}


@pytest.fixture
def mint_id_token(key_pair: Any) -> Callable[..., str]:
    """
    Returns a factory for RS256 ID tokens. Claims default to a valid token for
    ISSUER/CLIENT_ID; pass a claim as None to leave it out.
    """

    def mint(
        nonce: str | None = "nonce-xyz", key: Any = None, headers: dict[str, Any] | None = None, **claims: Any
    ) -> str:
        signing_key = key or key_pair
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": ISSUER,
            "sub": "user-123",
            "aud": CLIENT_ID,
            "exp": now + 3600,
            "iat": now,
            "nonce": nonce,
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        header = headers or {"alg": "RS256", "kid": signing_key.as_dict()["kid"]}
        return jwt.encode(header, payload, signing_key).decode("utf-8")

    return mint


class Browser:
    """Issues GET requests against the local callback listener from background threads."""

    def __init__(self) -> None:
        self.responses: list[httpx.Response] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def get(self, url: str) -> httpx.Response:
        with httpx.Client(trust_env=False, timeout=5) as client:
            return client.get(url)

    def visit_later(self, url: str, delay: float = 0.05) -> None:
        def run() -> None:
            time.sleep(delay)
            response = self.get(url)
            with self._lock:
                self.responses.append(response)

        thread = threading.Thread(target=run, daemon=True)
        self._threads.append(thread)
        thread.start()

    def join(self) -> None:
        for thread in self._threads:
            thread.join(timeout=5)


@pytest.fixture
def browser() -> Generator[Browser, None, None]:
    b = Browser()
    yield b
    b.join()
