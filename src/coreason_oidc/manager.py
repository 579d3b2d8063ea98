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
AuthenticationManager component: the relying-party state machine driving the
authorization-code and implicit flows.
"""

import base64
import hmac
import time
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any
from urllib.parse import quote, quote_plus, urlencode

import httpx
from authlib.jose import JWTClaims
from authlib.jose.errors import JoseError
from authlib.oidc.core.util import create_half_hash
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc.config import EncodingType, RelyingPartyConfig
from coreason_oidc.exceptions import (
    ClaimsVerificationError,
    ConfigurationError,
    CoreasonOIDCError,
    EncryptedTokenError,
    MalformedTokenError,
    ProtocolError,
    ReplayRejectedError,
    SignatureVerificationError,
    TransportError,
)
from coreason_oidc.jwt_processor import JWTProcessor
from coreason_oidc.models import AuthorizationRequest, AuthState, CallbackParams, TokenSet
from coreason_oidc.models_internal import StateBundle
from coreason_oidc.provider_config import ProviderConfigResolver
from coreason_oidc.storage import CacheBackend, create_storage
from coreason_oidc.token_manager import TokenManager
from coreason_oidc.transport import OIDCHttpClient
from coreason_oidc.utils.logger import logger, redact_state

tracer = trace.get_tracer(__name__)

OPENID_SCOPE = "openid"
_HASH_WIDTHS = ("256", "384", "512")


class AuthenticationManager:
    """
    Orchestrates one OpenID Connect relying party.

    `authenticate` inspects the callback parameters and either completes a flow
    (returns True), or builds the authorization redirect (returns False).
    Every failure raises a `CoreasonOIDCError` subclass and tombstones the state involved.

    Attributes:
        config (RelyingPartyConfig): Static client configuration.
        provider (ProviderConfigResolver): Provider metadata lookups.
        jwt_processor (JWTProcessor): Token decoding and signature checks.
        token_manager (TokenManager): State bundles and the token set.
        auth_state (AuthState): Outcome of the last `authenticate` call.
        authorization_request (AuthorizationRequest | None): The last redirect built.
    """

    def __init__(
        self,
        config: RelyingPartyConfig,
        http: OIDCHttpClient | None = None,
        token_manager: TokenManager | None = None,
        jwt_processor: JWTProcessor | None = None,
        session: MutableMapping[str, Any] | None = None,
        session_id: str | None = None,
        cache: CacheBackend | None = None,
        client: httpx.Client | None = None,
        redirect_handler: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the AuthenticationManager.

        Args:
            config: The configuration object.
            http: Transport (optional). Built from `config` (and `client`) when omitted.
            token_manager: Token manager (optional). Built from the configured storage driver when omitted.
            jwt_processor: JWT processor (optional). Built from the client secret and PKCE method when omitted.
            session: Session mapping for the session storage driver.
            session_id: Identifier of the caller's session, mixed into the state bundle binding.
            cache: Cache backend for the cache storage driver.
            client: External `httpx.Client` for the default transport.
            redirect_handler: Called with the authorization URL when a flow is initiated.
            clock: Time source for `exp`/`nbf` checks.
        """
        self.config = config
        self._internal_http = http is None
        self.http = http if http is not None else OIDCHttpClient.from_config(config, client=client)
        self.provider = ProviderConfigResolver(config, self.http)
        self.jwt_processor = jwt_processor or JWTProcessor(
            client_secret=config.client_secret,
            additional_jwks=config.additional_jwks,
            code_challenge_method=config.code_challenge_method,
        )
        if token_manager is None:
            storage = create_storage(
                config.storage,
                prefix=config.key_prefix,
                session=session,
                cache=cache,
                ttl=config.cache_ttl,
            )
            token_manager = TokenManager(storage, signing_key=config.signing_key, session_id=session_id)
        self.token_manager = token_manager
        self.redirect_handler = redirect_handler
        self._clock = clock

        self.auth_state = AuthState.IDLE
        self.authorization_request: AuthorizationRequest | None = None

    def __enter__(self) -> "AuthenticationManager":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._internal_http:
            self.http.close()

    def authenticate(self, params: CallbackParams | Mapping[str, Any]) -> bool:
        """
        Drives the flow for one incoming request.

        Args:
            params: The callback parameters (or the raw query/form mapping).

        Returns:
            bool: True once a flow completed; False when the user agent must be redirected.

        Raises:
            ProtocolError: If the provider reported an error or returned an unusable token response.
            ReplayRejectedError: If the state is missing, unknown, consumed or bound to another session.
            TokenValidationError: If the ID token signature or claims are invalid.
            DiscoveryError: If provider metadata could not be resolved.
            TransportError: If a provider call failed at the HTTP layer.
            ConfigurationError: If the client setup cannot build an authorization request.
        """
        if not isinstance(params, CallbackParams):
            params = CallbackParams.from_query(params)

        with tracer.start_as_current_span("oidc.authenticate") as span:
            try:
                if params.error:
                    if params.state:
                        self.token_manager.clear_state_bundle(params.state)
                    description = f" Description: {params.error_description}" if params.error_description else ""
                    raise ProtocolError(f"Error: {params.error}{description}")

                if params.code:
                    span.set_attribute("oidc.flow", "authorization_code")
                    result = self._handle_authorization_code_flow(params.code, params.state)
                elif params.id_token and self.config.allow_implicit_flow:
                    span.set_attribute("oidc.flow", "implicit")
                    result = self._handle_implicit_flow(params.id_token, params.access_token, params.state)
                else:
                    span.set_attribute("oidc.flow", "authorization_request")
                    self.request_authorization()
                    return False
            except CoreasonOIDCError as e:
                self.token_manager.commit_session()
                self.auth_state = AuthState.FAILED
                logger.warning(f"Authentication failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            self.token_manager.commit_session()
            self.auth_state = AuthState.COMPLETED
            span.set_status(Status(StatusCode.OK))
            return result

    def _load_bundle(self, state: str | None) -> tuple[str, StateBundle]:
        if not state:
            raise ReplayRejectedError("Unable to determine state")

        bundle = self.token_manager.load_state_bundle(state)
        if bundle is None:
            self.token_manager.clear_state_bundle(state)
            raise ReplayRejectedError(f"Unable to determine state. State: {redact_state(state)}")
        return state, bundle

    def _handle_authorization_code_flow(self, code: str, state_param: str | None) -> bool:
        state, bundle = self._load_bundle(state_param)

        try:
            token_json = self.request_tokens(code, bundle.code_verifier)

            id_token = token_json.get("id_token")
            if not isinstance(id_token, str) or not id_token:
                raise ProtocolError("User did not authorize openid scope.")

            access_token = token_json.get("access_token")
            access_token = access_token if isinstance(access_token, str) else None
            self.validate_id_token(id_token, access_token or "", bundle.nonce)

            refresh_token = token_json.get("refresh_token")
            self.token_manager.store_tokens(
                TokenSet(
                    access_token=access_token,
                    refresh_token=refresh_token if isinstance(refresh_token, str) else None,
                    id_token=id_token,
                    raw_response=token_json,
                )
            )
            self.token_manager.unset_nonce()
            logger.info("Authorization code flow completed")
            return True
        finally:
            self.token_manager.unset_state()
            self.token_manager.clear_state_bundle(state)

    def _handle_implicit_flow(self, id_token: str, access_token: str | None, state_param: str | None) -> bool:
        state, bundle = self._load_bundle(state_param)

        try:
            # at_hash is only checked when the claims carry it
            self.validate_id_token(id_token, access_token or "", bundle.nonce)

            self.token_manager.store_tokens(TokenSet(access_token=access_token, id_token=id_token))
            self.token_manager.unset_nonce()
            logger.info("Implicit flow completed")
            return True
        finally:
            self.token_manager.unset_state()
            self.token_manager.clear_state_bundle(state)

    def validate_id_token(self, id_token: str, access_token: str, nonce: str | None) -> dict[str, Any]:
        """
        Rejects JWE, verifies the signature against the provider's JWKS and checks the claims.

        Returns:
            dict[str, Any]: The verified claims.

        Raises:
            EncryptedTokenError: If the header declares `enc`.
            MalformedTokenError: If the token cannot be decoded.
            SignatureVerificationError: If the signature is invalid.
            ClaimsVerificationError: If any claim check fails.
        """
        header = self.jwt_processor.decode_jwt(id_token, 0)
        if header is None:
            raise MalformedTokenError("Unable to decode the ID token header")
        if "enc" in header:
            raise EncryptedTokenError("JWE response is not supported at the moment.")

        claims = self.jwt_processor.decode_jwt(id_token, 1)
        if claims is None:
            raise MalformedTokenError("Unable to decode the ID token payload")

        if not self.jwt_processor.verify_jwt_signature(id_token, self.get_jwks()):
            raise SignatureVerificationError("Unable to verify signature")

        if not self.verify_jwt_claims(claims, access_token, nonce, id_token):
            raise ClaimsVerificationError("Unable to verify JWT claims")
        return claims

    def verify_jwt_claims(
        self,
        claims: Mapping[str, Any],
        access_token: str,
        expected_nonce: str | None,
        id_token: str,
    ) -> bool:
        """
        Checks issuer, audience, subject, expiry, not-before, nonce and `at_hash`.

        Args:
            claims: The decoded payload.
            access_token: Access token bound by `at_hash` (empty string when absent).
            expected_nonce: Nonce saved for this attempt.
            id_token: The token the claims came from; its header selects the `at_hash` width.

        Returns:
            bool: True only if every check passes.
        """
        claims_options = {
            "iss": {"essential": True, "validate": lambda _, v: isinstance(v, str) and self._validate_issuer(v)},
            "aud": {"essential": True, "value": self.config.client_id},
            "sub": {"essential": True},
            "nonce": {"validate": lambda c, v: "nonce" not in c or self._validate_nonce(v, expected_nonce)},
            "at_hash": {
                "validate": lambda c, v: "at_hash" not in c
                or self.validate_access_token_hash(v, access_token, id_token)
            },
        }
        header = self.jwt_processor.decode_jwt(id_token, 0) or {}
        jwt_claims = JWTClaims(dict(claims), header, options=claims_options)

        try:
            jwt_claims.validate(now=self._clock(), leeway=self.config.leeway)
        except JoseError as e:
            logger.debug(f"Claims rejected: {e}")
            return False
        return True

    @staticmethod
    def _validate_nonce(claim_nonce: Any, expected_nonce: str | None) -> bool:
        if not isinstance(claim_nonce, str) or expected_nonce is None:
            return False
        return hmac.compare_digest(claim_nonce.encode("utf-8"), expected_nonce.encode("utf-8"))

    def _validate_issuer(self, issuer: str) -> bool:
        static_issuer = self.config.provider_metadata.get("issuer")
        if static_issuer is not None:
            return issuer == static_issuer
        if issuer == self.provider.get_provider_config_value("issuer", None):
            return True
        return issuer == self.provider.get_well_known_issuer()

    def validate_access_token_hash(self, at_hash: Any, access_token: str, id_token: str) -> bool:
        """
        Compares `at_hash` with the left half of the access token hash, using the
        hash width of the ID token's `alg` (RS256 when absent).
        """
        if not isinstance(at_hash, str):
            return False
        header = self.jwt_processor.decode_jwt(id_token, 0) or {}
        alg = str(header.get("alg") or "RS256")
        if alg[2:] not in _HASH_WIDTHS:
            return False
        expected = create_half_hash(access_token, alg)
        return expected is not None and hmac.compare_digest(at_hash.encode("utf-8"), expected)

    def request_authorization(self) -> AuthorizationRequest:
        """
        Builds the authorization redirect and persists a state bundle for it.

        Ambient nonce/state/verifier values are cleared so that the callback is
        always resolved through the scoped bundle.

        Returns:
            AuthorizationRequest: The redirect URL together with the generated secrets.

        Raises:
            ConfigurationError: If the redirect URL, client id or scopes are missing.
            DiscoveryError: If the authorization endpoint cannot be resolved.
        """
        if not self.config.redirect_url:
            raise ConfigurationError("Redirect URL is not set")
        if not self.config.client_id:
            raise ConfigurationError("Client ID is not set")
        if not self.config.scopes:
            raise ConfigurationError("Scope is not set")

        auth_endpoint = str(self.provider.get_provider_config_value("authorization_endpoint"))

        nonce = self.token_manager.generate_rand_string()
        state = self.token_manager.generate_rand_string()

        response_type = self.provider.get_provider_config_value("response_type", "code")
        if isinstance(response_type, list):
            response_type = " ".join(str(rt) for rt in response_type)

        auth_params: dict[str, str] = {
            **self.config.auth_params,
            "response_type": str(response_type),
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "nonce": nonce,
            "state": state,
            "scope": " ".join(dict.fromkeys([*self.config.scopes, OPENID_SCOPE])),
        }

        code_verifier: str | None = None
        method = self.jwt_processor.code_challenge_method
        if method:
            supported = self.provider.get_provider_config_value("code_challenge_methods_supported", [])
            if isinstance(supported, str):
                supported = [supported]
            if method in supported:
                code_verifier = self.token_manager.generate_rand_string(64)
                auth_params["code_challenge"] = self.jwt_processor.compute_code_challenge(code_verifier, method)
                auth_params["code_challenge_method"] = method
            else:
                logger.warning(f"Provider does not advertise PKCE method {method}; continuing without PKCE")

        self.token_manager.save_state_bundle(state, nonce, code_verifier)
        self.token_manager.unset_nonce()
        self.token_manager.unset_state()
        self.token_manager.unset_code_verifier()
        self.token_manager.commit_session()

        quote_via = quote if self.config.encoding_type == EncodingType.RFC3986 else quote_plus
        separator = "&" if "?" in auth_endpoint else "?"
        url = auth_endpoint + separator + urlencode(auth_params, quote_via=quote_via)

        request = AuthorizationRequest(url=url, state=state, nonce=nonce, code_verifier=code_verifier)
        self.authorization_request = request
        self.auth_state = AuthState.AWAITING_REDIRECT
        logger.info(f"Initiated authorization request with state {redact_state(state)}")

        if self.redirect_handler is not None:
            self.redirect_handler(url)
        return request

    def request_tokens(self, code: str, code_verifier: str | None = None) -> dict[str, Any]:
        """
        Exchanges the authorization code at the token endpoint.
        The ambient code verifier is cleared whatever the outcome.
        """
        token_endpoint = str(self.provider.get_provider_config_value("token_endpoint"))
        token_params = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret.get_secret_value(),
        }
        if code_verifier:
            token_params["code_verifier"] = code_verifier

        try:
            return self._post_token_request(token_endpoint, token_params)
        finally:
            self.token_manager.unset_code_verifier()

    def refresh_tokens(self, refresh_token: str | None = None) -> TokenSet:
        """
        Uses a refresh token to obtain fresh tokens and replaces the token set.

        Args:
            refresh_token: Token to use; defaults to the stored refresh token.

        Returns:
            TokenSet: The new token set.

        Raises:
            ProtocolError: If no refresh token is available or the provider refuses the grant.
            TokenValidationError: If a returned ID token fails verification.
        """
        refresh_token = refresh_token or self.token_manager.refresh_token
        if not refresh_token:
            raise ProtocolError("No refresh token available")

        token_endpoint = str(self.provider.get_provider_config_value("token_endpoint"))
        token_json = self._post_token_request(
            token_endpoint,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret.get_secret_value(),
            },
        )

        access_token = token_json.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProtocolError("Token response did not contain an access token")

        id_token = self.token_manager.id_token
        new_id_token = token_json.get("id_token")
        if isinstance(new_id_token, str) and new_id_token:
            # A refreshed ID token may only echo the nonce of the previous one
            previous = self.jwt_processor.decode_jwt(id_token, 1) if id_token else None
            self.validate_id_token(new_id_token, access_token, (previous or {}).get("nonce"))
            id_token = new_id_token

        new_refresh = token_json.get("refresh_token")
        tokens = TokenSet(
            access_token=access_token,
            refresh_token=new_refresh if isinstance(new_refresh, str) and new_refresh else refresh_token,
            id_token=id_token,
            raw_response=token_json,
        )
        self.token_manager.store_tokens(tokens)
        logger.info("Tokens refreshed")
        return tokens

    def _post_token_request(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        with tracer.start_as_current_span("oidc.token_request") as span:
            span.set_attribute("oauth.grant_type", params["grant_type"])
            response = self.http.post(url, data=params, headers=self._prepare_auth_headers())
            span.set_attribute("http.status_code", response.status_code)

            try:
                token_json = response.json_body()
            except ValueError:
                token_json = None

            if isinstance(token_json, dict) and "error" in token_json:
                error_description = token_json.get("error_description") or f"Got response: {token_json['error']}"
                span.set_status(Status(StatusCode.ERROR, str(token_json["error"])))
                raise ProtocolError(str(error_description))

            if not response.is_success:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                raise TransportError(f"Token endpoint returned HTTP {response.status_code}")

            if not isinstance(token_json, dict):
                raise ProtocolError("Token endpoint returned an invalid JSON document")
            return token_json

    def _prepare_auth_headers(self) -> dict[str, str]:
        """
        HTTP Basic client authentication (RFC 6749, section 2.3.1).
        """
        credentials = (
            f"{quote_plus(self.config.client_id)}:{quote_plus(self.config.client_secret.get_secret_value())}"
        )
        return {
            "Authorization": "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii"),
            "Accept": "application/json",
        }

    def get_jwks(self) -> list[dict[str, Any]]:
        """
        Fetches the provider's published keys. Not cached across verifications.
        """
        jwks_uri = str(self.provider.get_provider_config_value("jwks_uri"))
        response = self.http.get(jwks_uri, headers={"Accept": "application/json"})
        if not response.is_success:
            raise TransportError(f"Failed to fetch JWKS from {jwks_uri}: HTTP {response.status_code}")

        try:
            document = response.json_body()
        except ValueError as e:
            raise ProtocolError(f"Invalid JWKS document from {jwks_uri}: {e}") from e

        keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(keys, list):
            raise ProtocolError(f"JWKS document from {jwks_uri} does not contain 'keys'")
        return keys

    def request_user_info(self, attribute: str | None = None, add_openid_schema: bool = False) -> Any:
        """
        Calls the userinfo endpoint with the stored access token.

        Signed (`application/jwt`) responses are verified like an ID token before use.

        Args:
            attribute: Return only this claim (None when absent).
            add_openid_schema: Append `schema=openid` to the endpoint.

        Returns:
            The user info claims, or the selected attribute.

        Raises:
            ProtocolError: If no access token is held or the endpoint does not answer 200.
            TokenValidationError: If a signed response fails verification.
        """
        access_token = self.token_manager.access_token
        if not access_token:
            raise ProtocolError("An access token is required to request user info")

        endpoint = str(self.provider.get_provider_config_value("userinfo_endpoint"))
        if add_openid_schema:
            endpoint += ("&" if "?" in endpoint else "?") + "schema=openid"

        response = self.http.get(
            endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        if response.status_code != 200:
            raise ProtocolError(
                f"The communication to retrieve user data has failed with status code {response.status_code}"
            )

        if response.content_type == "application/jwt":
            user_info = self.validate_id_token(response.text.strip(), access_token, None)
        else:
            try:
                user_info = response.json_body()
            except ValueError as e:
                raise ProtocolError(f"Invalid user info response: {e}") from e
            if not isinstance(user_info, dict):
                raise ProtocolError("User info response is not a JSON object")

        if attribute is None:
            return user_info
        return user_info.get(attribute)
