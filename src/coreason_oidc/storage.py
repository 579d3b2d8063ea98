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
Key/value backends holding state bundles between the redirect and the callback.
"""

import threading
import time
from collections.abc import Callable, MutableMapping
from typing import Any, Protocol

from coreason_oidc.config import StorageDriver
from coreason_oidc.utils.logger import logger


class TokenStorage(Protocol):
    """Protocol for the storage collaborator of the token manager."""

    def put(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> str | None: ...

    def forget(self, key: str) -> None: ...

    def commit(self) -> None:
        """Flushes pending writes. May be a no-op."""
        ...


class CacheBackend(Protocol):
    """Protocol for an expiring cache (Redis, memcached or in-process)."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCacheBackend:
    """
    In-process implementation of CacheBackend with lazy expiry.
    Expired entries are also swept from `set` at most once per `sweep_interval`
    seconds, so keys that are never read again do not accumulate.
    Not suitable for multi-process deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        now = self._clock()
        expires_at = now + ttl if ttl is not None else None
        with self._lock:
            if now >= self._next_sweep:
                self._drop_expired(now)
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """
        Drops expired entries. Returns the number removed.
        """
        with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: float) -> int:
        # Caller holds the lock
        expired = [k for k, (_, exp) in self._entries.items() if exp is not None and exp <= now]
        for k in expired:
            del self._entries[k]
        self._next_sweep = now + self.sweep_interval
        return len(expired)


class SessionTokenStorage:
    """
    Stores values in the caller's session mapping (Starlette, Flask or Django sessions).
    Values live as long as the session does.
    """

    def __init__(self, session: MutableMapping[str, Any], prefix: str = "openid_connect_") -> None:
        self.session = session
        self.prefix = prefix

    def put(self, key: str, value: str) -> None:
        self.session[self.prefix + key] = value

    def get(self, key: str) -> str | None:
        value = self.session.get(self.prefix + key)
        if value is None:
            return None
        if isinstance(value, (str, int, float, bool)):
            return str(value)
        return None

    def forget(self, key: str) -> None:
        self.session.pop(self.prefix + key, None)

    def commit(self) -> None:
        # Django-style sessions persist on save(); plain mappings need nothing
        save = getattr(self.session, "save", None)
        if callable(save):
            save()


class CacheTokenStorage:
    """
    Stores values in an expiring cache. Entries vanish after `ttl` seconds (never when None).
    """

    def __init__(self, cache: CacheBackend, prefix: str = "openid_connect_", ttl: int | None = None) -> None:
        self.cache = cache
        self.prefix = prefix
        self.ttl = ttl

    def put(self, key: str, value: str) -> None:
        self.cache.set(self.prefix + key, value, self.ttl)

    def get(self, key: str) -> str | None:
        value = self.cache.get(self.prefix + key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        if isinstance(value, (str, int, float, bool)):
            return str(value)
        return None

    def forget(self, key: str) -> None:
        self.cache.delete(self.prefix + key)

    def commit(self) -> None:
        pass


class NullTokenStorage:
    """
    Stateless storage: every write is dropped and every read misses.
    Callers carry state bundles out-of-band.
    """

    def put(self, key: str, value: str) -> None:
        pass

    def get(self, key: str) -> str | None:
        return None

    def forget(self, key: str) -> None:
        pass

    def commit(self) -> None:
        pass


def create_storage(
    driver: StorageDriver,
    prefix: str = "openid_connect_",
    session: MutableMapping[str, Any] | None = None,
    cache: CacheBackend | None = None,
    ttl: int | None = None,
) -> TokenStorage:
    """
    Selects the storage backend once, at construction time.

    Args:
        driver: The configured driver.
        prefix: Namespace prepended to every key.
        session: Session mapping, required by the session driver.
        cache: Cache backend for the cache driver. Defaults to `MemoryCacheBackend`.
        ttl: Expiry in seconds for the cache driver.

    Returns:
        TokenStorage: The storage implementation.
    """
    if driver == StorageDriver.CACHE:
        return CacheTokenStorage(cache if cache is not None else MemoryCacheBackend(), prefix, ttl)

    if driver == StorageDriver.SESSION:
        if session is not None:
            return SessionTokenStorage(session, prefix)
        logger.warning("Session storage selected but no session was supplied. Falling back to stateless storage.")

    return NullTokenStorage()
