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
TokenManager component: per-attempt secrets (nonce, state, PKCE verifier) and the
final token set.
"""

import hashlib
import hmac
import secrets
from typing import Any

from pydantic import SecretStr, ValidationError

from coreason_oidc.models import TokenSet
from coreason_oidc.models_internal import StateBundle
from coreason_oidc.storage import NullTokenStorage, TokenStorage
from coreason_oidc.utils.logger import logger, redact_state

STATE_BUNDLE_PREFIX = "state-bundle:"
STATE_TOMBSTONE_PREFIX = "state-used:"
TOMBSTONE_MARKER = "1"

# Ambient keys written by releases that predate state bundles
LEGACY_NONCE_KEY = "nonce"
LEGACY_STATE_KEY = "state"
LEGACY_CODE_VERIFIER_KEY = "code_verifier"


class TokenManager:
    """
    Binds nonce, state and PKCE verifier to one authorization attempt and holds the
    tokens of the authenticated session.

    State bundles are stored under `state-bundle:<state>`. Consuming or failing an
    attempt replaces the bundle with a tombstone (`state-used:<state>`) so the same
    state can never be loaded again.

    Attributes:
        storage (TokenStorage): The key/value backend.
        signing_key (SecretStr | None): HMAC key for the bundle's `sid`. Without it bundles are unbound.
        session_id (str | None): Identifier of the caller's session, mixed into `sid` when known.
    """

    def __init__(
        self,
        storage: TokenStorage | None = None,
        signing_key: SecretStr | str | None = None,
        session_id: str | None = None,
    ) -> None:
        self.storage: TokenStorage = storage if storage is not None else NullTokenStorage()
        if isinstance(signing_key, str):
            signing_key = SecretStr(signing_key) if signing_key else None
        self.signing_key = signing_key
        self.session_id = session_id
        self._tokens = TokenSet()

    # Final tokens

    @property
    def tokens(self) -> TokenSet:
        return self._tokens

    @property
    def access_token(self) -> str | None:
        return self._tokens.access_token

    @property
    def refresh_token(self) -> str | None:
        return self._tokens.refresh_token

    @property
    def id_token(self) -> str | None:
        return self._tokens.id_token

    @property
    def token_response(self) -> dict[str, Any] | None:
        return self._tokens.raw_response

    def store_tokens(self, tokens: TokenSet) -> None:
        """Replaces the token set. Called only after claims verification succeeded."""
        self._tokens = tokens

    def clear_tokens(self) -> None:
        self._tokens = TokenSet()

    # Storage passthrough

    def commit_session(self) -> None:
        self.storage.commit()

    def set_session_key(self, key: str, value: str) -> None:
        self.storage.put(key, value)

    def get_session_key(self, key: str) -> str | None:
        return self.storage.get(key)

    def unset_session_key(self, key: str) -> None:
        self.storage.forget(key)

    # Legacy ambient values

    def set_nonce(self, nonce: str) -> None:
        self.set_session_key(LEGACY_NONCE_KEY, nonce)

    def get_nonce(self) -> str | None:
        return self.get_session_key(LEGACY_NONCE_KEY)

    def unset_nonce(self) -> None:
        self.unset_session_key(LEGACY_NONCE_KEY)

    def set_state(self, state: str) -> None:
        self.set_session_key(LEGACY_STATE_KEY, state)

    def get_state(self) -> str | None:
        return self.get_session_key(LEGACY_STATE_KEY)

    def unset_state(self) -> None:
        self.unset_session_key(LEGACY_STATE_KEY)

    def set_code_verifier(self, code_verifier: str) -> None:
        self.set_session_key(LEGACY_CODE_VERIFIER_KEY, code_verifier)

    def get_code_verifier(self) -> str | None:
        return self.get_session_key(LEGACY_CODE_VERIFIER_KEY)

    def unset_code_verifier(self) -> None:
        self.unset_session_key(LEGACY_CODE_VERIFIER_KEY)

    @staticmethod
    def generate_rand_string(length: int = 16) -> str:
        """
        Returns `length` cryptographically secure random bytes, hex-encoded (2 * length characters).
        """
        return secrets.token_hex(length)

    # State bundles

    def compute_sid(self, state: str) -> str | None:
        """
        HMAC-SHA256 of the state (prefixed by the session id when known). None without a signing key.
        """
        if self.signing_key is None:
            return None
        message = f"{self.session_id}:{state}" if self.session_id else state
        return hmac.new(
            self.signing_key.get_secret_value().encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def save_state_bundle(self, state: str, nonce: str, code_verifier: str | None = None) -> None:
        bundle = StateBundle(nonce=nonce, code_verifier=code_verifier, sid=self.compute_sid(state))
        self.storage.put(STATE_BUNDLE_PREFIX + state, bundle.model_dump_json())
        logger.debug(f"Saved state bundle for state {redact_state(state)}")

    def load_state_bundle(self, state: str) -> StateBundle | None:
        """
        Loads the bundle saved for `state`.

        Returns None when the state was already consumed (tombstoned), when no bundle
        exists, or when the bundle's `sid` does not match this session.
        Bundles written before state bundling existed are read from the ambient
        nonce/state/verifier keys, but only when the ambient state equals `state`;
        such bundles are migrated to the scoped key.
        """
        if not state:
            return None

        if self.storage.get(STATE_TOMBSTONE_PREFIX + state) is not None:
            logger.warning(f"Rejected replayed state {redact_state(state)}")
            return None

        raw = self.storage.get(STATE_BUNDLE_PREFIX + state)
        if raw is not None:
            try:
                bundle = StateBundle.model_validate_json(raw)
            except ValidationError:
                logger.warning(f"Discarding unreadable state bundle for state {redact_state(state)}")
                return None

            if bundle.sid is not None:
                expected = self.compute_sid(state)
                if expected is None or not hmac.compare_digest(bundle.sid.encode("utf-8"), expected.encode("utf-8")):
                    logger.warning(f"State bundle session binding mismatch for state {redact_state(state)}")
                    return None
            return bundle

        return self._load_legacy_bundle(state)

    def _load_legacy_bundle(self, state: str) -> StateBundle | None:
        legacy_state = self.get_state()
        if not legacy_state or not hmac.compare_digest(legacy_state.encode("utf-8"), state.encode("utf-8")):
            return None

        nonce = self.get_nonce()
        if not nonce:
            return None

        code_verifier = self.get_code_verifier()
        logger.info(f"Migrating legacy session values to a state bundle for state {redact_state(state)}")
        self.save_state_bundle(state, nonce, code_verifier)
        return StateBundle(nonce=nonce, code_verifier=code_verifier, sid=self.compute_sid(state))

    def clear_state_bundle(self, state: str) -> None:
        """
        Deletes the bundle and tombstones the state. Required on every terminal outcome.
        """
        if not state:
            return
        self.storage.forget(STATE_BUNDLE_PREFIX + state)
        self.storage.put(STATE_TOMBSTONE_PREFIX + state, TOMBSTONE_MARKER)
        logger.debug(f"Tombstoned state {redact_state(state)}")
