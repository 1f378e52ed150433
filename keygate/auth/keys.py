"""API key lifecycle — issue, reuse, rotate, refresh.

Implements:
  - init_key_manager()     — explicit initialization; returns the ready manager
  - generate_scoped_key()  — reuse the owner pair's key if scopes match, else rotate
  - generate_cloud_key()   — the (0, 0) root key with a single global scope
  - refresh_key()          — forced rotation of the key identified by its value
  - get_scopes_for_key()   — cached scope lookup used by the authorization gate

Invariants:
  - At most one key per (app_id, service_id). Rotation is delete + insert in
    one store transaction, never an update, and the old key stops resolving
    immediately. A failed rotation leaves the old key in place.
  - Every mutation invalidates the credential cache synchronously before the
    mutating call returns.
  - Rotations for the same owner pair run one at a time (per-pair asyncio.Lock);
    different owner pairs are not serialised against each other. A pair's lock
    is dropped once nobody holds or waits for it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from keygate.auth.cache import CredentialCache
from keygate.auth.scopes import AppScope, GlobalScope, Scope, scopes_match
from keygate.auth.store import Credential, CredentialStore, SQLiteCredentialStore
from keygate.constants import CLOUD_APP_ID, CLOUD_SERVICE_ID, DEFAULT_CACHE_TTL_S
from keygate.utils.keygen import generate_unique_key
from keygate.utils.logger import get_logger, key_prefix

logger = get_logger(__name__)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class KeyNotFoundError(Exception):
    """Raised when refresh_key() is given a key with no matching record.

    HTTP mapping: 401 Unauthorized
    """

    def __init__(self, message: str = "API key not found") -> None:
        super().__init__(message)
        self.message = message


class KeyManagerNotReadyError(RuntimeError):
    """Raised when a lifecycle operation runs before initialize() completed."""

    def __init__(self, message: str = "Key manager is not initialized") -> None:
        super().__init__(message)
        self.message = message


# ─── KeyManager ───────────────────────────────────────────────────────────────


@dataclass
class _OwnerLock:
    """Lock for one owner pair plus the number of tasks holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyManager:
    """Owns the credential store, its lookup cache, and the cloud key.

    Usage:
        keys = await init_key_manager(db_path=Path("~/.keygate/keys.db"))
        key = await keys.generate_scoped_key(42, 0)
        scopes = await keys.get_scopes_for_key(key)
        await keys.close()
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: Optional[CredentialCache] = None,
        cache_ttl_s: float = DEFAULT_CACHE_TTL_S,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else CredentialCache(store, ttl_s=cache_ttl_s)
        self._cloud_api_key: str = ""
        self._ready = False
        self._owner_locks: dict[tuple[int, int], _OwnerLock] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def cloud_api_key(self) -> str:
        """The current root key ("" until initialize() has run)."""
        return self._cloud_api_key

    @property
    def cache(self) -> CredentialCache:
        return self._cache

    async def initialize(self) -> None:
        """Prepare the store and make sure a cloud key exists. Idempotent."""
        if self._ready:
            return
        await self._store.initialize()
        await self._ensure_cloud_key(force=False)
        self._ready = True
        logger.info(
            "Key manager ready",
            cloud_key_prefix=key_prefix(self._cloud_api_key),
        )

    async def health_check(self) -> bool:
        return await self._store.health_check()

    async def close(self) -> None:
        self._ready = False
        self._cache.clear()
        await self._store.close()

    def _require_ready(self) -> None:
        if not self._ready:
            raise KeyManagerNotReadyError()

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def get_scopes_for_key(self, key: str) -> Optional[tuple[Scope, ...]]:
        """Return the scopes granted to ``key``, or None if the key is unknown.

        Raises:
            MalformedScopeData: If the stored scopes for the key are corrupt.
        """
        self._require_ready()
        credential = await self._cache.get_by_secret(key)
        if credential is None:
            return None
        return credential.scopes

    # ── Generation ────────────────────────────────────────────────────────────

    async def generate_scoped_key(
        self,
        app_id: int,
        service_id: int,
        *,
        force: bool = False,
        scopes: Optional[Sequence[Scope]] = None,
    ) -> str:
        """Return a key for the owner pair carrying exactly ``scopes``.

        Defaults to a single AppScope for ``app_id``. An existing key is reused
        when its scopes match (as a set) and ``force`` is False; otherwise the
        key is rotated and the new value returned.
        """
        self._require_ready()
        return await self._generate_key(app_id, service_id, force, scopes)

    async def generate_cloud_key(self, force: bool = False) -> str:
        """Ensure the root key exists (rotating it when forced) and return it."""
        self._require_ready()
        return await self._ensure_cloud_key(force)

    async def refresh_key(self, key: str) -> str:
        """Rotate the key identified by its value, keeping its scopes.

        Always produces a new key, even though the scopes are unchanged.

        Raises:
            KeyNotFoundError: If no record holds ``key``.
        """
        self._require_ready()
        credential = await self._cache.get_by_secret(key)
        if credential is None:
            raise KeyNotFoundError()

        if (credential.app_id, credential.service_id) == (CLOUD_APP_ID, CLOUD_SERVICE_ID):
            return await self.generate_cloud_key(force=True)

        return await self.generate_scoped_key(
            credential.app_id,
            credential.service_id,
            force=True,
            scopes=credential.scopes,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _ensure_cloud_key(self, force: bool) -> str:
        self._cloud_api_key = await self._generate_key(
            CLOUD_APP_ID,
            CLOUD_SERVICE_ID,
            force,
            [GlobalScope()],
        )
        return self._cloud_api_key

    async def _generate_key(
        self,
        app_id: int,
        service_id: int,
        force: bool,
        scopes: Optional[Sequence[Scope]],
    ) -> str:
        """All key generation comes through here: reuse or rotate, never both."""
        requested: tuple[Scope, ...] = (
            tuple(scopes) if scopes is not None else (AppScope(app_id=app_id),)
        )

        async with self._owner_lock(app_id, service_id):
            existing = await self._cache.get_by_owner(app_id, service_id)

            if existing is not None and not force and scopes_match(requested, existing.scopes):
                return existing.key

            return await self._rotate(app_id, service_id, requested, existing)

    @asynccontextmanager
    async def _owner_lock(self, app_id: int, service_id: int) -> AsyncIterator[None]:
        owner = (app_id, service_id)
        entry = self._owner_locks.get(owner)
        if entry is None:
            entry = self._owner_locks[owner] = _OwnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._owner_locks[owner]

    async def _rotate(
        self,
        app_id: int,
        service_id: int,
        scopes: tuple[Scope, ...],
        existing: Optional[Credential],
    ) -> str:
        """Replace the owner pair's key. Caller holds the owner pair's lock."""
        new_key = generate_unique_key()
        credential = Credential(app_id=app_id, service_id=service_id, scopes=scopes, key=new_key)

        if existing is None:
            await self._store.insert(credential)
        else:
            await self._store.replace(credential)
            self._cache.invalidate(app_id, service_id, existing.key)
        self._cache.invalidate(app_id, service_id, new_key)

        if existing is None:
            logger.info(
                "API key created",
                app_id=app_id,
                service_id=service_id,
                key_prefix=key_prefix(new_key),
            )
        else:
            logger.info(
                "API key rotated",
                app_id=app_id,
                service_id=service_id,
                old_key_prefix=key_prefix(existing.key),
                new_key_prefix=key_prefix(new_key),
            )
        return new_key


# ─── Initialization ───────────────────────────────────────────────────────────


async def init_key_manager(
    store: Optional[CredentialStore] = None,
    db_path: Optional[Path] = None,
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S,
) -> KeyManager:
    """Create, initialize, and return a ready KeyManager.

    The returned manager is the readiness handle: it only exists once the
    store is open and the cloud key is in place.

    Args:
        store:        CredentialStore to use. Defaults to SQLiteCredentialStore(db_path).
        db_path:      keys.db location when no store is given.
        cache_ttl_s:  Lookup cache lifetime in seconds.

    Raises:
        RuntimeError: Propagated from the store on schema version mismatch.
    """
    if store is None:
        store = (
            SQLiteCredentialStore(str(db_path))
            if db_path is not None
            else SQLiteCredentialStore()
        )
    manager = KeyManager(store, cache_ttl_s=cache_ttl_s)
    await manager.initialize()
    return manager
