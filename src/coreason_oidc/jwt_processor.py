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
JWTProcessor component: JWT decoding, signature verification and PKCE helpers.
"""

import hashlib
import json
from typing import Any

from authlib.jose import JsonWebKey, JsonWebSignature, OctKey
from authlib.jose.errors import BadSignatureError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr

from coreason_oidc.exceptions import (
    KeyNotFoundError,
    MalformedTokenError,
    SignatureVerificationError,
    UnsupportedAlgorithmError,
)
from coreason_oidc.utils.encoding import b64url_decode, b64url_encode
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)

RSA_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "PS256", "PS512"})
HMAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})

# PKCE challenge methods (RFC 7636) mapped to their hashlib name; None means the verifier is sent as-is
PKCE_METHODS: dict[str, str | None] = {
    "S256": "sha256",
    "plain": None,
}


class JWTProcessor:
    """
    Stateless JWT helper. Holds only the client secret (HS* key) and
    supplementary JWKs merged into every key lookup.

    Attributes:
        code_challenge_method (str | None): Selected PKCE method, or None to disable PKCE.
    """

    def __init__(
        self,
        client_secret: SecretStr | str = "",
        additional_jwks: list[dict[str, Any]] | None = None,
        code_challenge_method: str | None = None,
    ) -> None:
        """
        Initialize the JWTProcessor.

        Args:
            client_secret: Shared secret for HS256/HS384/HS512 tokens.
            additional_jwks: Keys consulted after the provider's JWKS.
            code_challenge_method: PKCE method (`S256` or `plain`).
        """
        self._client_secret = client_secret if isinstance(client_secret, SecretStr) else SecretStr(client_secret)
        self.additional_jwks = list(additional_jwks or [])
        self.code_challenge_method = code_challenge_method

    def pkce_supported_algs(self) -> dict[str, str | None]:
        return dict(PKCE_METHODS)

    def compute_code_challenge(self, code_verifier: str, method: str | None = None) -> str:
        """
        Derives the PKCE code challenge. Methods without a hash degrade to the plain verifier.
        """
        hash_name = self.pkce_supported_algs().get(method or self.code_challenge_method or "")
        if not hash_name:
            return code_verifier
        return self.url_encode(hashlib.new(hash_name, code_verifier.encode("ascii")).digest())

    @staticmethod
    def url_encode(data: bytes) -> str:
        """Base64url without padding, as used by `at_hash` and PKCE."""
        return b64url_encode(data)

    def decode_jwt(self, token: str, section: int = 0) -> dict[str, Any] | None:
        """
        Decodes one section of a JWT without verifying it.

        Args:
            token: The compact JWT.
            section: 0 for the header, 1 for the payload.

        Returns:
            The decoded JSON object, or None if the section is absent or undecodable.
        """
        parts = token.split(".")
        if section < 0 or section >= len(parts):
            return None
        try:
            decoded = json.loads(b64url_decode(parts[section]))
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None

    def verify_jwt_signature(self, token: str, keys: list[dict[str, Any]]) -> bool:
        """
        Verifies the JWT signature for the algorithm declared in its header.

        Args:
            token: The compact JWT.
            keys: The provider's JWKS `keys` array.

        Returns:
            bool: True if the signature is valid, False otherwise.

        Raises:
            MalformedTokenError: If the token does not have three decodable parts.
            UnsupportedAlgorithmError: If the algorithm is not RS*, PS256/PS512 or HS*.
            KeyNotFoundError: If no RSA key matches the header.
        """
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError(f"Expected 3 token sections, got {len(parts)}")

        try:
            signature = b64url_decode(parts[2])
        except ValueError as e:
            raise MalformedTokenError("Error decoding signature from token") from e
        if not signature:
            raise MalformedTokenError("Error decoding signature from token")

        header = self.decode_jwt(token, 0)
        if header is None:
            raise MalformedTokenError("Error decoding JSON from token header")
        alg = header.get("alg")
        if not isinstance(alg, str):
            raise MalformedTokenError("Error missing signature type in token header")

        with tracer.start_as_current_span("oidc.verify_signature") as span:
            span.set_attribute("jwt.alg", alg)
            if alg in RSA_ALGORITHMS:
                jwk = self._get_key_for_header(keys, header)
                valid = self._verify_rsa_signature(token, alg, jwk)
            elif alg in HMAC_ALGORITHMS:
                valid = self._verify_hmac_signature(token, alg)
            else:
                span.set_status(Status(StatusCode.ERROR, "unsupported algorithm"))
                raise UnsupportedAlgorithmError(f"No support for signature type: {alg}")

            if not valid:
                logger.warning(f"JWT signature verification failed for alg {alg}")
                span.set_status(Status(StatusCode.ERROR, "bad signature"))
            return valid

    def _verify_hmac_signature(self, token: str, alg: str) -> bool:
        """
        HS* signatures keyed with the client secret, verified by authlib.
        """
        secret = self._client_secret.get_secret_value()
        if not secret:
            raise SignatureVerificationError(f"No client secret configured for {alg}")
        try:
            key = OctKey.import_key(secret.encode("utf-8"))
            JsonWebSignature(algorithms=[alg]).deserialize_compact(token, key)
        except BadSignatureError:
            return False
        except (JoseError, ValueError) as e:
            raise SignatureVerificationError(f"Unable to verify {alg} signature: {e}") from e
        return True

    def _verify_rsa_signature(self, token: str, alg: str, jwk: dict[str, Any]) -> bool:
        """
        PKCS#1 v1.5 for RS*, PSS with matching MGF1 hash for PS*; both via authlib.
        """
        if "n" not in jwk or "e" not in jwk:
            raise SignatureVerificationError("Malformed key object")
        try:
            key = JsonWebKey.import_key(jwk)
            JsonWebSignature(algorithms=[alg]).deserialize_compact(token, key)
        except BadSignatureError:
            return False
        except (JoseError, ValueError) as e:
            raise SignatureVerificationError(f"Unable to verify {alg} signature: {e}") from e
        return True

    def _get_key_for_header(self, keys: list[dict[str, Any]], header: dict[str, Any]) -> dict[str, Any]:
        """
        Picks the verification key: by `kid` when the header has one, else the first RSA key.
        Never falls back to an unrelated key when a `kid` is present.
        """
        kid = header.get("kid")
        alg = header.get("alg")
        for candidate in [*keys, *self.additional_jwks]:
            if not isinstance(candidate, dict):
                continue
            if candidate.get("kty") == "RSA":
                if kid is None or candidate.get("kid") == kid:
                    return candidate
            elif kid is not None and candidate.get("alg") == alg and candidate.get("kid") == kid:
                return candidate

        if kid is not None:
            raise KeyNotFoundError(f"Unable to find a key for (algorithm, kid): ({alg}, {kid})")
        raise KeyNotFoundError("Unable to find a key for RSA")
