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
Data models for the coreason-oidc package.
"""

import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class AuthState(StrEnum):
    """Where the authentication state machine stands after the last call."""

    IDLE = "idle"
    AWAITING_REDIRECT = "awaiting_redirect"
    COMPLETED = "completed"
    FAILED = "failed"


class CallbackParams(BaseModel):
    """
    The parameters of the incoming request, passed explicitly to `authenticate`.

    Attributes:
        error (str | None): Provider error code on the redirect.
        error_description (str | None): Human readable provider error.
        code (str | None): Authorization code (code flow).
        id_token (str | None): ID token (implicit flow).
        access_token (str | None): Access token (implicit flow, optional).
        state (str | None): The round-tripped state value.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    error: str | None = None
    error_description: str | None = None
    code: str | None = None
    id_token: str | None = None
    access_token: str | None = None
    state: str | None = None

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "CallbackParams":
        """
        Builds the parameters from a query or form mapping, ignoring unknown keys.
        Multi-valued entries keep their first value.
        """
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = params.get(name)
            if isinstance(raw, (list, tuple)):
                raw = raw[0] if raw else None
            if raw is not None:
                values[name] = str(raw)
        return cls(**values)


class TokenSet(BaseModel):
    """
    Tokens obtained by the last successful flow. Replaced wholesale on each completion.

    Attributes:
        access_token (str | None): The access token.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The verified ID token.
        raw_response (dict[str, Any] | None): The full token endpoint response.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    raw_response: dict[str, Any] | None = None

    def __repr__(self) -> str:
        # Tokens are bearer credentials
        return (
            f"TokenSet(access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"id_token={'<REDACTED>' if self.id_token else None})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class AuthorizationRequest(BaseModel):
    """
    The redirect built when a flow is initiated.

    Attributes:
        url (str): The full authorization endpoint URL to send the user agent to.
        state (str): The state value bound to this attempt.
        nonce (SecretStr): The nonce expected back in the ID token.
        code_verifier (SecretStr | None): PKCE verifier, when PKCE is active.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    state: str
    nonce: SecretStr
    code_verifier: SecretStr | None = None


class HttpResponse(BaseModel):
    """
    Transport-neutral view of an HTTP response.
    """

    model_config = ConfigDict(frozen=True)

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str | None:
        """The media type without parameters, lower-cased."""
        value = self.headers.get("content-type")
        if not value:
            return None
        return value.split(";", 1)[0].strip().lower()

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json_body(self) -> Any:
        """
        Raises:
            ValueError: If the body is not JSON.
        """
        return json.loads(self.body)
