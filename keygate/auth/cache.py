"""Credential lookup cache — TTL + LRU, keyed two ways.

CredentialCache is a read-through cache in front of a CredentialStore with
two independent maps:
  - by owner pair (app_id, service_id)
  - by raw key value

Negative results ("no such key") are cached as well, so repeated lookups of a
nonexistent key do not reach the store within the TTL.

Expiry is lazy: an entry older than ttl_s is treated as a miss on the next
read. There is no background sweep.

Each map carries a generation counter bumped by invalidate() and clear(). A
store read that was in flight when the counter moved does not fill the cache,
so a lookup racing a rotation cannot write the revoked credential back.

IMPORTANT: every store mutation must call invalidate() synchronously before
the mutating call returns. After invalidate() returns, the next lookup for
that owner pair / key hits the store.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, TypeVar

from keygate.auth.store import Credential, CredentialStore
from keygate.constants import CACHE_MAXSIZE, DEFAULT_CACHE_TTL_S
from keygate.utils.logger import get_logger, key_prefix

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """OrderedDict-backed map of key → (value, inserted_at).

    Entries expire ttl_s seconds after insertion and the least-recently-used
    entry is evicted once maxsize is reached. ``clock`` is injectable so tests
    can move time without sleeping.
    """

    def __init__(
        self,
        ttl_s: float = DEFAULT_CACHE_TTL_S,
        maxsize: int = CACHE_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self.maxsize = maxsize
        self._clock = clock
        self._entries: OrderedDict[K, tuple[V, float]] = OrderedDict()
        self.generation = 0

    def lookup(self, key: K) -> tuple[bool, Optional[V]]:
        """Return (hit, value). An expired entry is dropped and reported as a miss."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, inserted_at = entry
        if self._clock() - inserted_at >= self.ttl_s:
            del self._entries[key]
            return False, None
        self._entries.move_to_end(key)
        return True, value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.maxsize:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)
        self.generation += 1

    def clear(self) -> None:
        self._entries.clear()
        self.generation += 1

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class CredentialCache:
    """Read-through credential lookups by owner pair and by key."""

    def __init__(
        self,
        store: CredentialStore,
        ttl_s: float = DEFAULT_CACHE_TTL_S,
        maxsize: int = CACHE_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._by_owner: TTLCache[tuple[int, int], Optional[Credential]] = TTLCache(
            ttl_s, maxsize, clock
        )
        self._by_secret: TTLCache[str, Optional[Credential]] = TTLCache(
            ttl_s, maxsize, clock
        )

    async def get_by_owner(self, app_id: int, service_id: int) -> Optional[Credential]:
        """Return the credential for an owner pair, or None if the pair has none."""
        owner = (app_id, service_id)
        hit, credential = self._by_owner.lookup(owner)
        if hit:
            return credential

        generation = self._by_owner.generation
        credential = await self._store.find_by_owner(app_id, service_id)
        if self._by_owner.generation == generation:
            self._by_owner.set(owner, credential)
        return credential

    async def get_by_secret(self, key: str) -> Optional[Credential]:
        """Return the credential holding ``key``, or None if it is unknown."""
        hit, credential = self._by_secret.lookup(key)
        if hit:
            return credential

        generation = self._by_secret.generation
        credential = await self._store.find_by_secret(key)
        if self._by_secret.generation == generation:
            self._by_secret.set(key, credential)
        return credential

    def invalidate(self, app_id: int, service_id: int, key: Optional[str] = None) -> None:
        """Drop cached lookups for an owner pair and, when given, a key."""
        self._by_owner.invalidate((app_id, service_id))
        if key is not None:
            self._by_secret.invalidate(key)
        logger.debug(
            "Credential cache invalidated",
            app_id=app_id,
            service_id=service_id,
            key_prefix=key_prefix(key) if key else None,
        )

    def clear(self) -> None:
        """Drop every cached lookup in both maps."""
        self._by_owner.clear()
        self._by_secret.clear()
        logger.debug("Credential cache cleared")
