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
Provider configuration resolver: static client settings plus the lazily fetched
discovery document.
"""

from typing import Any
from urllib.parse import urlencode

from opentelemetry import trace

from coreason_oidc.config import RelyingPartyConfig
from coreason_oidc.exceptions import DiscoveryError, TransportError
from coreason_oidc.transport import OIDCHttpClient
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"

_MISSING = object()


class ProviderConfigResolver:
    """
    Resolves provider metadata, static overrides first, then discovery.

    The discovery document is fetched at most once per instance and memoized;
    a failed fetch is not cached, so a later lookup may succeed once the provider recovers.

    Attributes:
        config (RelyingPartyConfig): The static client configuration.
        http (OIDCHttpClient): Transport used for the discovery call.
    """

    def __init__(self, config: RelyingPartyConfig, http: OIDCHttpClient) -> None:
        self.config = config
        self.http = http
        self._provider_values: dict[str, Any] = dict(config.provider_metadata)
        self._well_known: dict[str, Any] | None = None

    @property
    def discovery_url(self) -> str:
        url = self.config.provider_url.rstrip("/") + WELL_KNOWN_PATH
        if self.config.well_known_params:
            url += "?" + urlencode(self.config.well_known_params)
        return url

    def get_provider_config_value(self, key: str, default: Any = _MISSING) -> Any:
        """
        Returns a provider value, consulting static/cached values before discovery.

        Args:
            key: The metadata field (e.g. `token_endpoint`).
            default: Returned when neither source has the key.

        Returns:
            The resolved value.

        Raises:
            DiscoveryError: If the discovery fetch fails, or the key is absent and no default was given.
        """
        if key in self._provider_values:
            return self._provider_values[key]

        value = self._get_well_known_value(key, default)
        self._provider_values[key] = value
        return value

    def get_well_known_issuer(self, append_slash: bool = False) -> str:
        """
        Returns the `issuer` advertised by the discovery document.
        """
        issuer = self._get_well_known_value("issuer", "")
        return (issuer if isinstance(issuer, str) else "") + ("/" if append_slash else "")

    def _get_well_known_value(self, key: str, default: Any = _MISSING) -> Any:
        document = self._fetch_well_known()
        if key in document and document[key] is not None:
            return document[key]
        if default is not _MISSING:
            return default
        raise DiscoveryError(
            f"The provider {key} could not be fetched. "
            "Make sure your provider has a well-known configuration available."
        )

    def _fetch_well_known(self) -> dict[str, Any]:
        if self._well_known is not None:
            return self._well_known

        url = self.discovery_url
        with tracer.start_as_current_span("oidc.discovery") as span:
            span.set_attribute("oidc.discovery_url", url)
            try:
                response = self.http.get(url, headers={"Accept": "application/json"})
            except TransportError as e:
                span.record_exception(e)
                raise DiscoveryError(f"Error fetching well-known configuration from {url}: {e}") from e

            if not response.is_success:
                raise DiscoveryError(
                    f"Failed to fetch well-known configuration from {url}: HTTP {response.status_code}"
                )

            try:
                document = response.json_body()
            except ValueError as e:
                raise DiscoveryError(f"Invalid JSON in well-known configuration from {url}: {e}") from e

            if not isinstance(document, dict):
                raise DiscoveryError(f"Well-known configuration from {url} is not a JSON object")

        logger.info(f"Loaded OIDC discovery document from {url}")
        self._well_known = document
        return document
