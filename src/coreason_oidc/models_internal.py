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
Internal data models for the coreason-oidc package.
These are not exposed in the public API.
"""

from pydantic import BaseModel, ConfigDict, Field


class StateBundle(BaseModel):
    """
    Secrets bound to one authorization attempt, stored under its `state`.

    `sid` is the session-binding HMAC of the state; None when no signing key is configured.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    nonce: str = Field(..., min_length=1)
    code_verifier: str | None = None
    sid: str | None = None
