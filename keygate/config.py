"""Config loading for keygate.

Reads `.keygate/config.yaml` (or `~/.keygate/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field, or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. KEYGATE_CONFIG environment variable (if set)
  3. `.keygate/config.yaml` (working directory — for development)
  4. `~/.keygate/config.yaml` (home directory — for device deployments)

Environment variable overrides (applied after the file, always win):
  KEYGATE_LOCAL_MODE    — overrides auth.local_mode ("true" / "false")
  KEYGATE_UNMANAGED     — overrides auth.unmanaged ("true" / "false")
  KEYGATE_OS_VARIANT    — overrides auth.os_variant ("prod" / "dev")
  KEYGATE_KEYS_DB_PATH  — overrides keys.db_path
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional

import yaml

from keygate.constants import DEFAULT_CACHE_TTL_S, OS_VARIANT_PROD
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_OS_VARIANTS: frozenset[str] = frozenset({OS_VARIANT_PROD, "dev"})

DEFAULT_KEYS_DB_PATH = "~/.keygate/keys.db"

DEFAULT_CONFIG_PATHS = [
    ".keygate/config.yaml",
    os.path.expanduser("~/.keygate/config.yaml"),
]

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class AuthConfig:
    """Inputs deciding whether requests must present an API key.

    local_mode: device is in local development mode (managed devices only)
    unmanaged:  device is not connected to a fleet
    os_variant: "prod" or "dev" OS image
    """

    local_mode: bool = False
    unmanaged: bool = False
    os_variant: str = OS_VARIANT_PROD


@dataclass
class KeyStoreConfig:
    """Credential store location and lookup cache lifetime."""

    db_path: str = DEFAULT_KEYS_DB_PATH
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S


@dataclass
class Config:
    """Root configuration object populated from .keygate/config.yaml.

    All fields have safe defaults; the defaults require authorization.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    auth: AuthConfig = field(default_factory=AuthConfig)
    keys: KeyStoreConfig = field(default_factory=KeyStoreConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            SystemExit(1): On an invalid auth.os_variant or keys.cache_ttl_s.
        """
        # ── Auth ──────────────────────────────────────────────────────────────
        auth_raw = raw.get("auth") or {}
        os_variant = auth_raw.get("os_variant", OS_VARIANT_PROD)
        _validate_os_variant(os_variant, source="auth.os_variant")
        auth = AuthConfig(
            local_mode=bool(auth_raw.get("local_mode", False)),
            unmanaged=bool(auth_raw.get("unmanaged", False)),
            os_variant=os_variant,
        )

        # ── Keys ──────────────────────────────────────────────────────────────
        keys_raw = raw.get("keys") or {}
        cache_ttl_s = keys_raw.get("cache_ttl_s", DEFAULT_CACHE_TTL_S)
        if (
            isinstance(cache_ttl_s, bool)
            or not isinstance(cache_ttl_s, (int, float))
            or cache_ttl_s < 0
        ):
            _fail(
                f"CONFIG ERROR: Invalid keys.cache_ttl_s: {cache_ttl_s!r}. "
                "Must be a non-negative number of seconds."
            )
        keys = KeyStoreConfig(
            db_path=keys_raw.get("db_path", DEFAULT_KEYS_DB_PATH),
            cache_ttl_s=float(cache_ttl_s),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            auth=auth,
            keys=keys,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate keygate configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       invalid values, or invalid override environment variables.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "keygate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.auth.unmanaged and config.auth.os_variant != OS_VARIANT_PROD:
        logger.warning(
            "SECURITY WARNING: unmanaged device on a non-production OS image. "
            "API key authorization is disabled."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        local_mode=config.auth.local_mode,
        unmanaged=config.auth.unmanaged,
        os_variant=config.auth.os_variant,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply KEYGATE_* environment variable overrides to a Config in-place.

    Raises:
        SystemExit(1): If a boolean override is not a recognised boolean, or
                       KEYGATE_OS_VARIANT is not a supported variant.
    """
    local_mode = os.environ.get("KEYGATE_LOCAL_MODE")
    if local_mode is not None:
        config.auth.local_mode = _parse_bool("KEYGATE_LOCAL_MODE", local_mode)

    unmanaged = os.environ.get("KEYGATE_UNMANAGED")
    if unmanaged is not None:
        config.auth.unmanaged = _parse_bool("KEYGATE_UNMANAGED", unmanaged)

    os_variant = os.environ.get("KEYGATE_OS_VARIANT")
    if os_variant is not None:
        _validate_os_variant(os_variant, source="KEYGATE_OS_VARIANT")
        config.auth.os_variant = os_variant

    db_path = os.environ.get("KEYGATE_KEYS_DB_PATH")
    if db_path:
        config.keys.db_path = db_path


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    _fail(
        f"CONFIG ERROR: {name} environment variable is not a valid boolean: '{value}'"
    )


def _validate_os_variant(value: object, source: str) -> None:
    if value not in VALID_OS_VARIANTS:
        _fail(
            f"CONFIG ERROR: Invalid {source}: '{value}'. "
            f"Supported values: {sorted(VALID_OS_VARIANTS)}."
        )


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)
