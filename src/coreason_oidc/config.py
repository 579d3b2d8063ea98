# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
Configuration for the coreason-oidc package.
"""

from enum import StrEnum
from typing import Any
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EncodingType(StrEnum):
    """Query-string encoding used for the authorization redirect."""

    RFC1738 = "RFC1738"
    RFC3986 = "RFC3986"


class StorageDriver(StrEnum):
    """Key/value backend used for state bundles."""

    SESSION = "session"
    CACHE = "cache"
    NULL = "null"


def _require_http_url(value: str, name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"The {name} is not a valid URL")
    return value


class RelyingPartyConfig(BaseSettings):
    """
    Static client configuration for one OpenID Provider.

    Immutable once built. Construction fails if the provider URL, client id,
    client secret or redirect URL are missing, or if either URL is malformed.

    Attributes:
        provider_url (str): Base URL of the provider; discovery is fetched below it.
        client_id (str): The OIDC client id.
        client_secret (SecretStr): The OIDC client secret (also the HMAC key for HS* tokens).
        redirect_url (str): The callback URL registered with the provider.
        scopes (list[str]): Requested scopes. `openid` is always added on the wire.
        leeway (int): Clock skew tolerance in seconds for `exp`/`nbf`.
        provider_metadata (dict[str, Any]): Static overrides consulted before discovery.
        signing_key (SecretStr | None): Key binding state bundles to a session (`sid`).
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
        frozen=True,
    )

    provider_url: str
    client_id: str
    client_secret: SecretStr
    redirect_url: str
    scopes: list[str] = Field(default_factory=lambda: ["openid"])
    encoding_type: EncodingType = EncodingType.RFC1738
    leeway: int = Field(default=300, ge=0, description="Allowed clock skew in seconds.")
    allow_implicit_flow: bool = False
    auth_params: dict[str, str] = Field(default_factory=dict)
    registration_params: dict[str, Any] = Field(default_factory=dict)
    well_known_params: dict[str, str] = Field(default_factory=dict)
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    code_challenge_method: str | None = None
    additional_jwks: list[dict[str, Any]] = Field(default_factory=list)
    signing_key: SecretStr | None = None

    storage: StorageDriver = StorageDriver.SESSION
    key_prefix: str = "openid_connect_"
    cache_ttl: int | None = Field(default=300, description="TTL in seconds for the cache driver. None keeps forever.")

    http_timeout: float = Field(default=60.0, gt=0, description="Timeout in seconds for all provider calls.")
    verify_peer: bool = True
    cert_path: str | None = None
    http_proxy: str | None = None
    max_response_bytes: int = Field(default=1_000_000, gt=0)

    @field_validator("client_id")
    @classmethod
    def require_client_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("The client ID has not been set")
        return v

    @field_validator("client_secret")
    @classmethod
    def require_client_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("The client secret has not been set")
        return v

    @field_validator("provider_url")
    @classmethod
    def validate_provider_url(cls, v: str) -> str:
        return _require_http_url(v.strip(), "provider URL")

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect_url(cls, v: str) -> str:
        return _require_http_url(v.strip(), "redirect URL")

    @field_validator("scopes")
    @classmethod
    def dedupe_scopes(cls, v: list[str]) -> list[str]:
        """
        Removes blanks and duplicates while keeping the configured order.
        """
        return list(dict.fromkeys(s.strip() for s in v if s.strip()))

    @field_validator("signing_key")
    @classmethod
    def empty_signing_key_is_none(cls, v: SecretStr | None) -> SecretStr | None:
        if v is not None and not v.get_secret_value():
            return None
        return v
