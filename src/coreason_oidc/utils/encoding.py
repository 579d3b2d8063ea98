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
Base64url helpers shared by the JWT processor and PKCE.
"""

import base64

__all__ = ["b64url_decode", "b64url_encode"]


def b64url_encode(data: bytes) -> str:
    """Encodes bytes as unpadded base64url (RFC 7515, section 2)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """
    Decodes a base64url string, restoring any stripped padding.

    Raises:
        ValueError: If the value is not valid base64url.
    """
    padding = -len(value) % 4
    try:
        return base64.urlsafe_b64decode(value + "=" * padding)
    except ValueError as e:
        raise ValueError(f"Invalid base64url value: {e}") from e
