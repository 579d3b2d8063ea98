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
OpenID Connect relying-party engine: discovery, authorization redirects, token exchange
and ID token verification behind a single state machine.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import EncodingType, RelyingPartyConfig, StorageDriver
from .exceptions import (
    ClaimsVerificationError,
    ConfigurationError,
    CoreasonOIDCError,
    DiscoveryError,
    EncryptedTokenError,
    KeyNotFoundError,
    MalformedTokenError,
    OversizedResponseError,
    ProtocolError,
    ReplayRejectedError,
    SignatureVerificationError,
    TokenValidationError,
    TransportError,
    UnsupportedAlgorithmError,
)
from .jwt_processor import JWTProcessor
from .manager import AuthenticationManager
from .models import AuthorizationRequest, AuthState, CallbackParams, HttpResponse, TokenSet
from .provider_config import ProviderConfigResolver
from .storage import (
    CacheTokenStorage,
    MemoryCacheBackend,
    NullTokenStorage,
    SessionTokenStorage,
    create_storage,
)
from .token_manager import TokenManager
from .transport import OIDCHttpClient

__all__ = [
    "AuthState",
    "AuthenticationManager",
    "AuthorizationRequest",
    "CacheTokenStorage",
    "CallbackParams",
    "ClaimsVerificationError",
    "ConfigurationError",
    "CoreasonOIDCError",
    "DiscoveryError",
    "EncodingType",
    "EncryptedTokenError",
    "HttpResponse",
    "JWTProcessor",
    "KeyNotFoundError",
    "MalformedTokenError",
    "MemoryCacheBackend",
    "NullTokenStorage",
    "OIDCHttpClient",
    "OversizedResponseError",
    "ProtocolError",
    "ProviderConfigResolver",
    "RelyingPartyConfig",
    "ReplayRejectedError",
    "SessionTokenStorage",
    "SignatureVerificationError",
    "StorageDriver",
    "TokenManager",
    "TokenSet",
    "TokenValidationError",
    "TransportError",
    "UnsupportedAlgorithmError",
    "create_storage",
]
