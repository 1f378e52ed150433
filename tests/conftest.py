"""Root test configuration for keygate.

Clears KEYGATE_* environment variables so a developer's shell cannot change
authorization decisions under test, and provides key store fixtures backed by
a real SQLite file under tmp_path.
"""

from pathlib import Path

import pytest

from keygate.auth.keys import KeyManager, init_key_manager
from keygate.auth.store import SQLiteCredentialStore

_KEYGATE_ENV_VARS = (
    "KEYGATE_CONFIG",
    "KEYGATE_LOCAL_MODE",
    "KEYGATE_UNMANAGED",
    "KEYGATE_OS_VARIANT",
    "KEYGATE_KEYS_DB_PATH",
)


@pytest.fixture(autouse=True)
def clean_keygate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove KEYGATE_* overrides for every test."""
    for name in _KEYGATE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests."""
    from keygate.auth.limiter import limiter
    try:
        limiter._storage.reset()
    except Exception:
        pass  # not every storage backend supports reset


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "keys.db"


@pytest.fixture
async def store(db_path: Path):
    """An initialized SQLiteCredentialStore, closed after the test."""
    s = SQLiteCredentialStore(str(db_path))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def keys(db_path: Path):
    """A ready KeyManager over a fresh key store."""
    manager: KeyManager = await init_key_manager(db_path=db_path)
    yield manager
    await manager.close()
