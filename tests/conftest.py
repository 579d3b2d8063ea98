# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import base64
import hashlib
import json
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_oidc.config import RelyingPartyConfig

ISSUER = "https://issuer.test"
CLIENT_ID = "client-123"
CLIENT_SECRET = "secret-456"
REDIRECT_URL = "https://rp.test/callback"
NOW = 1_700_000_000


class FakeProvider:
    """
    In-memory OpenID Provider served through httpx.MockTransport.
    Records every request so tests can assert on call counts and payloads.
    """

    def __init__(self, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.discovery: dict[str, Any] = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "jwks_uri": f"{issuer}/jwks",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "code_challenge_methods_supported": ["S256", "plain"],
        }
        self.discovery_status = 200
        self.jwks: dict[str, Any] = {"keys": []}
        self.token_response: dict[str, Any] = {}
        self.token_status = 200
        self.userinfo_response: Callable[[], httpx.Response] = lambda: httpx.Response(
            200, json={"sub": "user-1", "email": "user@example.com"}
        )
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(self.discovery_status, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            return httpx.Response(self.token_status, json=self.token_response)
        if path == "/userinfo":
            return self.userinfo_response()
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]

    def form(self, path: str) -> dict[str, str]:
        parsed = parse_qs(self.last(path).content.decode("utf-8"))
        return {k: v[0] for k, v in parsed.items()}


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def at_hash_for(access_token: str, hash_name: str = "sha256") -> str:
    digest = hashlib.new(hash_name, access_token.encode("utf-8")).digest()
    return b64url(digest[: len(digest) // 2])


def unsigned_token(header: dict[str, Any], claims: dict[str, Any] | None = None) -> str:
    """A JWT with an arbitrary header and a placeholder signature."""
    payload = b64url(json.dumps(claims or {}).encode("utf-8"))
    return f"{b64url(json.dumps(header).encode('utf-8'))}.{payload}.c2ln"


def sign(claims: dict[str, Any], key: Any, alg: str = "RS256", kid: str | None = None) -> str:
    header: dict[str, Any] = {"alg": alg}
    if kid is not None:
        header["kid"] = kid
    token = jwt.encode(header, claims, key)
    return token.decode("ascii") if isinstance(token, bytes) else str(token)


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def other_rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def public_jwk(rsa_key: Any) -> dict[str, Any]:
    return dict(rsa_key.as_dict(is_private=False))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_config() -> Callable[..., RelyingPartyConfig]:
    def _make(**overrides: Any) -> RelyingPartyConfig:
        values: dict[str, Any] = {
            "provider_url": ISSUER,
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "redirect_url": REDIRECT_URL,
        }
        values.update(overrides)
        return RelyingPartyConfig(**values)

    return _make


@pytest.fixture
def id_claims() -> Callable[..., dict[str, Any]]:
    def _claims(**overrides: Any) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-1",
            "exp": NOW + 600,
            "iat": NOW,
        }
        claims.update(overrides)
        return claims

    return _claims
