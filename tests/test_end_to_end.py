# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from coreason_oidc.config import RelyingPartyConfig
from coreason_oidc.exceptions import ClaimsVerificationError, ReplayRejectedError
from coreason_oidc.manager import AuthenticationManager
from coreason_oidc.models import AuthState
from coreason_oidc.storage import MemoryCacheBackend
from tests.conftest import CLIENT_SECRET, NOW, FakeProvider, at_hash_for, sign

WELL_KNOWN = "/.well-known/openid-configuration"


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_code_flow_with_saved_bundle(
    provider: FakeProvider,
    make_config: Callable[..., RelyingPartyConfig],
    rsa_key: Any,
    public_jwk: dict[str, Any],
    id_claims: Callable[..., dict[str, Any]],
) -> None:
    session: dict[str, Any] = {}
    auth = AuthenticationManager(make_config(), client=provider.client(), session=session, clock=lambda: NOW)
    auth.token_manager.save_state_bundle("state123", "nonce123")

    provider.jwks = {"keys": [public_jwk]}
    id_token = sign(id_claims(nonce="nonce123", at_hash=at_hash_for("at-1")), rsa_key, kid=public_jwk["kid"])
    provider.token_response = {"access_token": "at-1", "refresh_token": "rt-1", "id_token": id_token}

    assert auth.authenticate({"code": "code-abc", "state": "state123"}) is True

    assert auth.auth_state == AuthState.COMPLETED
    assert auth.token_manager.access_token == "at-1"
    assert auth.token_manager.refresh_token == "rt-1"
    assert auth.token_manager.id_token == id_token
    assert auth.token_manager.token_response == provider.token_response
    assert provider.form("/token")["code"] == "code-abc"
    assert provider.count(WELL_KNOWN) == 1
    assert provider.count("/jwks") == 1

    # The same callback replayed is refused before reaching the provider
    with pytest.raises(ReplayRejectedError):
        auth.authenticate({"code": "code-abc", "state": "state123"})
    assert provider.count("/token") == 1


def test_full_round_trip_across_requests(
    provider: FakeProvider,
    make_config: Callable[..., RelyingPartyConfig],
    rsa_key: Any,
    public_jwk: dict[str, Any],
    id_claims: Callable[..., dict[str, Any]],
) -> None:
    config = make_config(storage="cache", signing_key="binding-key", code_challenge_method="S256")
    cache = MemoryCacheBackend()

    # Redirect and callback are served by separate manager instances sharing only the cache
    first = AuthenticationManager(config, client=provider.client(), cache=cache, session_id="browser-1")
    request = first.request_authorization()

    provider.jwks = {"keys": [public_jwk]}
    claims = id_claims(nonce=request.nonce.get_secret_value(), at_hash=at_hash_for("at-1"))
    provider.token_response = {"access_token": "at-1", "id_token": sign(claims, rsa_key, kid=public_jwk["kid"])}

    second = AuthenticationManager(
        config, client=provider.client(), cache=cache, session_id="browser-1", clock=lambda: NOW
    )
    assert second.authenticate({"code": "code-abc", "state": request.state}) is True
    assert request.code_verifier is not None
    assert provider.form("/token")["code_verifier"] == request.code_verifier.get_secret_value()


def test_bundle_bound_to_other_session(
    provider: FakeProvider, make_config: Callable[..., RelyingPartyConfig]
) -> None:
    config = make_config(storage="cache", signing_key="binding-key")
    cache = MemoryCacheBackend()
    request = AuthenticationManager(
        config, client=provider.client(), cache=cache, session_id="victim"
    ).request_authorization()

    attacker = AuthenticationManager(config, client=provider.client(), cache=cache, session_id="attacker")
    with pytest.raises(ReplayRejectedError):
        attacker.authenticate({"code": "code-abc", "state": request.state})
    assert provider.count("/token") == 0


def test_bundle_expires_with_cache_ttl(provider: FakeProvider, make_config: Callable[..., RelyingPartyConfig]) -> None:
    clock = FakeClock()
    config = make_config(storage="cache", cache_ttl=60)
    auth = AuthenticationManager(config, client=provider.client(), cache=MemoryCacheBackend(clock=clock))
    request = auth.request_authorization()

    clock.now += 61

    with pytest.raises(ReplayRejectedError):
        auth.authenticate({"code": "code-abc", "state": request.state})


def test_null_storage_cannot_complete(provider: FakeProvider, make_config: Callable[..., RelyingPartyConfig]) -> None:
    auth = AuthenticationManager(make_config(storage="null"), client=provider.client())
    request = auth.request_authorization()

    with pytest.raises(ReplayRejectedError):
        auth.authenticate({"code": "code-abc", "state": request.state})


def test_implicit_flow(
    provider: FakeProvider,
    make_config: Callable[..., RelyingPartyConfig],
    rsa_key: Any,
    public_jwk: dict[str, Any],
    id_claims: Callable[..., dict[str, Any]],
) -> None:
    auth = AuthenticationManager(
        make_config(allow_implicit_flow=True), client=provider.client(), session={}, clock=lambda: NOW
    )
    request = auth.request_authorization()
    provider.jwks = {"keys": [public_jwk]}
    claims = id_claims(nonce=request.nonce.get_secret_value(), at_hash=at_hash_for("implicit-at"))
    id_token = sign(claims, rsa_key, kid=public_jwk["kid"])
    callback = {"id_token": id_token, "access_token": "implicit-at", "state": request.state}

    assert auth.authenticate(callback) is True

    assert auth.token_manager.id_token == id_token
    assert auth.token_manager.access_token == "implicit-at"
    assert auth.token_manager.refresh_token is None
    assert provider.count("/token") == 0

    with pytest.raises(ReplayRejectedError):
        auth.authenticate(callback)


def test_implicit_flow_access_token_mismatch(
    provider: FakeProvider,
    make_config: Callable[..., RelyingPartyConfig],
    rsa_key: Any,
    public_jwk: dict[str, Any],
    id_claims: Callable[..., dict[str, Any]],
) -> None:
    auth = AuthenticationManager(
        make_config(allow_implicit_flow=True), client=provider.client(), session={}, clock=lambda: NOW
    )
    request = auth.request_authorization()
    provider.jwks = {"keys": [public_jwk]}
    claims = id_claims(nonce=request.nonce.get_secret_value(), at_hash=at_hash_for("genuine-at"))
    callback = {
        "id_token": sign(claims, rsa_key, kid=public_jwk["kid"]),
        "access_token": "substituted-at",
        "state": request.state,
    }

    with pytest.raises(ClaimsVerificationError):
        auth.authenticate(callback)
    with pytest.raises(ReplayRejectedError):
        auth.authenticate(callback)


def test_hs256_id_token_with_saved_bundle(
    provider: FakeProvider, make_config: Callable[..., RelyingPartyConfig], id_claims: Callable[..., dict[str, Any]]
) -> None:
    auth = AuthenticationManager(make_config(), client=provider.client(), session={}, clock=lambda: NOW)
    auth.token_manager.save_state_bundle("state123", "nonce123")
    id_token = sign(id_claims(nonce="nonce123"), CLIENT_SECRET, alg="HS256")
    provider.token_response = {"access_token": "at-1", "refresh_token": "rt-1", "id_token": id_token}

    assert auth.authenticate({"code": "code-abc", "state": "state123"}) is True

    assert auth.token_manager.access_token == "at-1"
    assert auth.token_manager.refresh_token == "rt-1"
    assert auth.token_manager.id_token == id_token
    assert auth.token_manager.load_state_bundle("state123") is None


def test_bundle_expires_after_one_second_ttl(make_config: Callable[..., RelyingPartyConfig]) -> None:
    clock = FakeClock()
    auth = AuthenticationManager(
        make_config(storage="cache", cache_ttl=1), http=MagicMock(), cache=MemoryCacheBackend(clock=clock)
    )
    auth.token_manager.save_state_bundle("state123", "nonce123")

    clock.now += 2

    assert auth.token_manager.load_state_bundle("state123") is None
    with pytest.raises(ReplayRejectedError):
        auth.authenticate({"code": "code-abc", "state": "state123"})


def test_legacy_session_values_complete_flow(
    provider: FakeProvider,
    make_config: Callable[..., RelyingPartyConfig],
    rsa_key: Any,
    public_jwk: dict[str, Any],
    id_claims: Callable[..., dict[str, Any]],
) -> None:
    # Written by a release that stored one nonce/state per session
    session: dict[str, Any] = {"openid_connect_state": "legacy-state", "openid_connect_nonce": "legacy-nonce"}
    auth = AuthenticationManager(make_config(), client=provider.client(), session=session, clock=lambda: NOW)
    provider.jwks = {"keys": [public_jwk]}
    id_token = sign(id_claims(nonce="legacy-nonce"), rsa_key, kid=public_jwk["kid"])
    provider.token_response = {"access_token": "at-1", "id_token": id_token}

    assert auth.authenticate({"code": "code-abc", "state": "legacy-state"}) is True
    assert "openid_connect_state" not in session
    assert "openid_connect_nonce" not in session
    with pytest.raises(ReplayRejectedError):
        auth.authenticate({"code": "code-abc", "state": "legacy-state"})
