"""Scope model — the kinds of access an API key can carry.

A scope is a frozen dataclass, so scopes compare structurally and are
hashable. The set of kinds is closed: ``Scope`` is a union, and
``check_scope()`` matches it exhaustively (``assert_never`` makes a missing
branch a type-checker error when a new kind is added).

Wire format (stored in the ``api_secrets.scopes`` column):

    [{"type": "global"}, {"type": "app", "appId": 5}]
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence, Union, assert_never


class MalformedScopeData(ValueError):
    """Raised when persisted scope data cannot be deserialised.

    Fatal for the lookup that hit it. Never interpreted as "no scopes".
    """

    def __init__(self, message: str = "Malformed scope data") -> None:
        super().__init__(message)
        self.message = message


# ─── Scope kinds ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GlobalScope:
    """Access to every resource."""

    type: ClassVar[str] = "global"


@dataclass(frozen=True)
class AppScope:
    """Access to the resources of a single application."""

    type: ClassVar[str] = "app"

    app_id: int


Scope = Union[GlobalScope, AppScope]


@dataclass(frozen=True)
class ScopedResources:
    """The resources a request wants to act on."""

    apps: Sequence[int] = ()


# ─── Checks ───────────────────────────────────────────────────────────────────


def check_scope(scope: Scope, resources: ScopedResources) -> bool:
    """Return True if ``scope`` grants access to ``resources``."""
    if isinstance(scope, GlobalScope):
        return True
    if isinstance(scope, AppScope):
        return scope.app_id in resources.apps
    assert_never(scope)


def is_scoped(resources: ScopedResources, scopes: Sequence[Scope]) -> bool:
    """Return True if any of ``scopes`` grants access to ``resources``."""
    return any(check_scope(scope, resources) for scope in scopes)


def scopes_match(requested: Sequence[Scope], existing: Sequence[Scope]) -> bool:
    """Set equality under structural equality.

    Same cardinality, and every requested scope equals some existing scope.
    """
    if len(requested) != len(existing):
        return False
    return all(scope in existing for scope in requested)


# ─── Serialisation ────────────────────────────────────────────────────────────


def _scope_to_dict(scope: Scope) -> dict[str, Any]:
    if isinstance(scope, GlobalScope):
        return {"type": GlobalScope.type}
    if isinstance(scope, AppScope):
        return {"type": AppScope.type, "appId": scope.app_id}
    assert_never(scope)


def _scope_from_dict(item: Any) -> Scope:
    if not isinstance(item, dict):
        raise MalformedScopeData(f"Scope entry is not an object: {item!r}")

    kind = item.get("type")
    if kind == GlobalScope.type:
        return GlobalScope()
    if kind == AppScope.type:
        app_id = item.get("appId")
        # bool is an int subclass; reject it explicitly
        if isinstance(app_id, bool) or not isinstance(app_id, int):
            raise MalformedScopeData(f"App scope has invalid appId: {app_id!r}")
        return AppScope(app_id=app_id)
    raise MalformedScopeData(f"Unknown scope type: {kind!r}")


def serialize_scopes(scopes: Sequence[Scope]) -> str:
    """Serialise scopes to their JSON wire format, preserving order."""
    return json.dumps([_scope_to_dict(scope) for scope in scopes])


def deserialize_scopes(data: str) -> tuple[Scope, ...]:
    """Parse the JSON wire format back into scopes, preserving order.

    Raises:
        MalformedScopeData: If ``data`` is not valid JSON, not an array, or
                            contains an entry that is not a known scope.
    """
    try:
        raw = json.loads(data)
    except (TypeError, ValueError) as exc:
        raise MalformedScopeData(f"Scope data is not valid JSON: {exc}") from exc

    if not isinstance(raw, list):
        raise MalformedScopeData(f"Scope data is not an array: {raw!r}")

    return tuple(_scope_from_dict(item) for item in raw)
