"""Credential store — persistence contract + aiosqlite implementation.

CredentialStore is the Protocol the key lifecycle manager consumes. Records
are never partially updated: rotation is replace(), which deletes the owner
pair's record and inserts the new one in a single transaction.

SQLiteCredentialStore features:
  - Long-lived aiosqlite connection (open in initialize(), close in close())
  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1; RuntimeError on mismatch
  - UNIQUE(app_id, service_id): at most one active key per owner pair
  - File permissions 0o600 on every initialize() call
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import NoReturn, Optional, Protocol, runtime_checkable

import aiosqlite

from keygate.auth.scopes import Scope, deserialize_scopes, serialize_scopes
from keygate.utils.logger import get_logger, key_prefix

logger = get_logger(__name__)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class DuplicateKeyError(Exception):
    """Raised when inserting a key for an owner pair that already has one.

    Indicates a lifecycle logic defect (insert without a prior delete) or a
    collision with another pair's key.
    """

    def __init__(self, app_id: int, service_id: int) -> None:
        message = f"An API key already exists for app {app_id} service {service_id}"
        super().__init__(message)
        self.message = message
        self.app_id = app_id
        self.service_id = service_id


# ─── Credential ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Credential:
    """A persisted API key and the scopes it carries.

    id is assigned by the store on insert (None before that).
    """

    app_id: int
    service_id: int
    scopes: tuple[Scope, ...]
    key: str
    id: Optional[int] = None


# ─── CredentialStore Protocol ─────────────────────────────────────────────────


@runtime_checkable
class CredentialStore(Protocol):
    """Pluggable credential persistence interface. All methods are async."""

    async def initialize(self) -> None:
        """Prepare the store for use (idempotent)."""
        ...

    async def find_by_owner(self, app_id: int, service_id: int) -> Optional[Credential]:
        """Return the key for an owner pair, or None."""
        ...

    async def find_by_secret(self, key: str) -> Optional[Credential]:
        """Return the record holding ``key``, or None."""
        ...

    async def insert(self, credential: Credential) -> None:
        """Persist a new record. Raises DuplicateKeyError if the pair has one."""
        ...

    async def delete_by_owner(self, app_id: int, service_id: int) -> None:
        """Delete the record for an owner pair (no-op if absent)."""
        ...

    async def replace(self, credential: Credential) -> None:
        """Atomically swap the owner pair's record for ``credential``.

        On failure the previous record is left in place.
        """
        ...

    async def health_check(self) -> bool:
        """Returns True if the store is operational. Must not raise."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...


# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_secrets (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id      INTEGER NOT NULL,
    service_id  INTEGER NOT NULL,
    scopes      TEXT NOT NULL,
    key         TEXT NOT NULL UNIQUE,
    UNIQUE (app_id, service_id)
);
"""

_SCHEMA_VERSION = 1

_SELECT_COLUMNS = "SELECT id, app_id, service_id, scopes, key FROM api_secrets"

_INSERT_SQL = (
    "INSERT INTO api_secrets (app_id, service_id, scopes, key) VALUES (?, ?, ?, ?)"
)

_DELETE_BY_OWNER_SQL = "DELETE FROM api_secrets WHERE app_id = ? AND service_id = ?"


def _row_to_credential(row: aiosqlite.Row) -> Credential:
    """Convert a row to a Credential. Raises MalformedScopeData on corrupt scopes."""
    return Credential(
        id=row["id"],
        app_id=row["app_id"],
        service_id=row["service_id"],
        scopes=deserialize_scopes(row["scopes"]),
        key=row["key"],
    )


def _insert_params(credential: Credential) -> tuple[int, int, str, str]:
    return (
        credential.app_id,
        credential.service_id,
        serialize_scopes(credential.scopes),
        credential.key,
    )


# ─── SQLiteCredentialStore ────────────────────────────────────────────────────


class SQLiteCredentialStore:
    """Async SQLite credential store using aiosqlite exclusively.

    Usage:
        store = SQLiteCredentialStore("~/.keygate/keys.db")
        await store.initialize()   # raises RuntimeError on schema version mismatch
        cred = await store.find_by_owner(42, 0)
        await store.close()
    """

    def __init__(self, db_path: str = "~/.keygate/keys.db") -> None:
        self._db_path: str = os.path.expanduser(str(db_path))
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify schema.

        Steps:
          1. Create parent directory if absent
          2. Open aiosqlite connection (long-lived)
          3. Enable WAL: PRAGMA journal_mode=WAL
          4. Read PRAGMA user_version
             - 0: fresh DB → create schema, set user_version=1
             - 1: compatible schema → no-op
             - other: raises RuntimeError
          5. chmod 0o600

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        if self._db is not None:
            return

        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "key_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "key_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported key database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

        os.chmod(self._db_path, 0o600)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("key_db_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except Exception as exc:
            logger.warning("key_db_health_check_failed", error=str(exc))
            return False

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteCredentialStore used before initialize()")
        return self._db

    # ── Queries ───────────────────────────────────────────────────────────────

    async def find_by_owner(self, app_id: int, service_id: int) -> Optional[Credential]:
        async with self._conn().execute(
            f"{_SELECT_COLUMNS} WHERE app_id = ? AND service_id = ?",
            (app_id, service_id),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_credential(row) if row is not None else None

    async def find_by_secret(self, key: str) -> Optional[Credential]:
        async with self._conn().execute(
            f"{_SELECT_COLUMNS} WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_credential(row) if row is not None else None

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def insert(self, credential: Credential) -> None:
        db = self._conn()
        try:
            await db.execute(_INSERT_SQL, _insert_params(credential))
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            await self._insert_conflict(credential, exc)

        logger.debug(
            "key_inserted",
            app_id=credential.app_id,
            service_id=credential.service_id,
            key_prefix=key_prefix(credential.key),
        )

    async def delete_by_owner(self, app_id: int, service_id: int) -> None:
        db = self._conn()
        await db.execute(_DELETE_BY_OWNER_SQL, (app_id, service_id))
        await db.commit()
        logger.debug("key_deleted", app_id=app_id, service_id=service_id)

    async def replace(self, credential: Credential) -> None:
        """Delete the owner pair's record and insert ``credential`` in one transaction.

        Raises:
            DuplicateKeyError: The insert violated a UNIQUE constraint. The
                delete is rolled back with it, so the old record survives.
        """
        db = self._conn()
        try:
            await db.execute(
                _DELETE_BY_OWNER_SQL, (credential.app_id, credential.service_id)
            )
            await db.execute(_INSERT_SQL, _insert_params(credential))
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            await self._insert_conflict(credential, exc)
        except Exception:
            await db.rollback()
            raise

        logger.debug(
            "key_replaced",
            app_id=credential.app_id,
            service_id=credential.service_id,
            key_prefix=key_prefix(credential.key),
        )

    async def _insert_conflict(self, credential: Credential, exc: Exception) -> NoReturn:
        await self._conn().rollback()
        logger.error(
            "key_insert_conflict",
            app_id=credential.app_id,
            service_id=credential.service_id,
            error=str(exc),
        )
        raise DuplicateKeyError(credential.app_id, credential.service_id) from exc
