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
Custom exceptions for the coreason-oidc package.
"""


class CoreasonOIDCError(Exception):
    """Base exception for all coreason-oidc errors."""


class ConfigurationError(CoreasonOIDCError):
    """Raised when the client setup is incomplete (client id, redirect URL, scopes...)."""


class DiscoveryError(CoreasonOIDCError):
    """Raised when the discovery document cannot be fetched or lacks a requested field."""


class TransportError(CoreasonOIDCError):
    """Raised when an outbound call fails at the network/HTTP layer."""


class OversizedResponseError(TransportError):
    """Raised when an HTTP response is too large."""


class ProtocolError(CoreasonOIDCError):
    """
    Raised when the provider answers with an error payload, or omits a required
    artifact such as the ID token.
    """


class TokenValidationError(CoreasonOIDCError):
    """Raised when an ID token fails signature or claims verification."""


class MalformedTokenError(TokenValidationError):
    """Raised when a JWT cannot be split or decoded."""


class UnsupportedAlgorithmError(TokenValidationError):
    """Raised when the JWT header declares an algorithm we do not verify."""


class KeyNotFoundError(TokenValidationError):
    """Raised when no JWK matches the token header."""


class SignatureVerificationError(TokenValidationError):
    """Raised when the token's signature cannot be verified."""


class EncryptedTokenError(TokenValidationError):
    """Raised for JWE (encrypted) ID tokens, which are not supported."""


class ClaimsVerificationError(TokenValidationError):
    """Raised when the ID token claims do not match the expected values."""


class ReplayRejectedError(CoreasonOIDCError):
    """Raised when the state bundle is missing, already consumed or bound to another session."""
