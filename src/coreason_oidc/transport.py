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
HTTP transport used for every call to the OpenID Provider.
"""

import json
from collections.abc import Mapping
from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_oidc.config import RelyingPartyConfig
from coreason_oidc.exceptions import OversizedResponseError, TransportError
from coreason_oidc.models import HttpResponse
from coreason_oidc.utils.logger import logger

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


def determine_content_type(body: str | None) -> str:
    """
    Raw bodies holding a JSON object are sent as JSON, everything else as a form.
    """
    if body:
        try:
            if isinstance(json.loads(body), dict):
                return JSON_CONTENT_TYPE
        except ValueError:
            pass
    return FORM_CONTENT_TYPE


class OIDCHttpClient:
    """
    Thin synchronous wrapper over `httpx.Client`.

    Network failures surface as `TransportError`. Non-2xx responses are returned
    untouched so callers can tell a provider error payload from a broken exchange.

    Attributes:
        timeout (float): Timeout in seconds applied to every request.
        max_response_bytes (int): Upper bound on any response body.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        verify_peer: bool = True,
        cert_path: str | None = None,
        http_proxy: str | None = None,
        max_response_bytes: int = 1_000_000,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the OIDCHttpClient.

        Args:
            timeout: Timeout in seconds for connect/read/write.
            verify_peer: Verify the provider's TLS certificate.
            cert_path: Optional client certificate (PEM) for mutual TLS.
            http_proxy: Optional proxy URL.
            max_response_bytes: Responses larger than this raise `OversizedResponseError`.
            client: External client (optional). Its own timeout/TLS settings win when given.
        """
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes
        self._internal_client = client is None

        if client is not None:
            self._client = client
        else:
            self._client = httpx.Client(
                timeout=timeout,
                verify=verify_peer,
                cert=cert_path,
                proxy=http_proxy,
            )

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

    @classmethod
    def from_config(cls, config: RelyingPartyConfig, client: httpx.Client | None = None) -> "OIDCHttpClient":
        return cls(
            timeout=config.http_timeout,
            verify_peer=config.verify_peer,
            cert_path=config.cert_path,
            http_proxy=config.http_proxy,
            max_response_bytes=config.max_response_bytes,
            client=client,
        )

    def __enter__(self) -> "OIDCHttpClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._internal_client:
            self._client.close()

    def get(self, url: str, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self._send("GET", url, headers=headers)

    def post(
        self,
        url: str,
        data: Mapping[str, str] | None = None,
        content: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        """
        Sends a POST with either form fields (`data`) or a raw body (`content`).
        """
        request_headers = dict(headers or {})
        if data is None and not any(k.lower() == "content-type" for k in request_headers):
            request_headers["Content-Type"] = determine_content_type(content)
        return self._send("POST", url, headers=request_headers, data=data, content=content)

    def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
        content: str | None = None,
    ) -> HttpResponse:
        kwargs: dict[str, Any] = {"headers": dict(headers or {})}
        if data is not None:
            kwargs["data"] = dict(data)
        elif content is not None:
            kwargs["content"] = content.encode("utf-8")

        try:
            with self._client.stream(method, url, **kwargs) as response:
                content_length = response.headers.get("Content-Length")
                if content_length and content_length.isdigit() and int(content_length) > self.max_response_bytes:
                    raise OversizedResponseError(f"Response from {url} too large")

                body = bytearray()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_response_bytes:
                        raise OversizedResponseError(f"Response from {url} too large")

                logger.debug(f"{method} {url} -> {response.status_code}")
                return HttpResponse(
                    status_code=response.status_code,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=bytes(body),
                )
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransportError(f"HTTP {method} {url} failed: {e}") from e
