"""Unit tests for keygate/auth/scopes.py.

Covers scope checks, OR semantics across scopes, set equality, and the JSON
wire format (including malformed input).
"""

from __future__ import annotations

import json

import pytest

from keygate.auth.scopes import (
    AppScope,
    GlobalScope,
    MalformedScopeData,
    ScopedResources,
    check_scope,
    deserialize_scopes,
    is_scoped,
    scopes_match,
    serialize_scopes,
)


class TestScopeValues:
    def test_structural_equality(self) -> None:
        assert AppScope(app_id=5) == AppScope(app_id=5)
        assert AppScope(app_id=5) != AppScope(app_id=6)
        assert GlobalScope() == GlobalScope()
        assert GlobalScope() != AppScope(app_id=0)

    def test_hashable(self) -> None:
        assert len({AppScope(app_id=1), AppScope(app_id=1), GlobalScope()}) == 2

    def test_immutable(self) -> None:
        scope = AppScope(app_id=1)
        with pytest.raises(AttributeError):
            scope.app_id = 2  # type: ignore[misc]

    def test_type_tags(self) -> None:
        assert GlobalScope.type == "global"
        assert AppScope(app_id=1).type == "app"


class TestCheckScope:
    @pytest.mark.parametrize(
        "resources",
        [ScopedResources(), ScopedResources(apps=[1]), ScopedResources(apps=[1, 2, 99])],
    )
    def test_global_matches_anything(self, resources: ScopedResources) -> None:
        assert check_scope(GlobalScope(), resources) is True

    def test_app_matches_own_app(self) -> None:
        assert check_scope(AppScope(app_id=3), ScopedResources(apps=[1, 3])) is True

    def test_app_rejects_other_app(self) -> None:
        assert check_scope(AppScope(app_id=3), ScopedResources(apps=[1, 2])) is False

    def test_app_rejects_empty_resources(self) -> None:
        assert check_scope(AppScope(app_id=3), ScopedResources()) is False


class TestIsScoped:
    def test_global_in_list_always_true(self) -> None:
        scopes = [AppScope(app_id=1), GlobalScope()]
        assert is_scoped(ScopedResources(apps=[42]), scopes)
        assert is_scoped(ScopedResources(), scopes)

    def test_different_app_false(self) -> None:
        assert not is_scoped(ScopedResources(apps=[1]), [AppScope(app_id=2)])

    def test_same_app_true(self) -> None:
        assert is_scoped(ScopedResources(apps=[1]), [AppScope(app_id=1)])

    def test_union_of_scopes(self) -> None:
        scopes = [AppScope(app_id=1), AppScope(app_id=2)]
        assert is_scoped(ScopedResources(apps=[1]), scopes)
        assert is_scoped(ScopedResources(apps=[2]), scopes)
        assert not is_scoped(ScopedResources(apps=[3]), scopes)

    def test_no_scopes_false(self) -> None:
        assert not is_scoped(ScopedResources(apps=[1]), [])


class TestScopesMatch:
    def test_same_scopes_different_order(self) -> None:
        assert scopes_match(
            [GlobalScope(), AppScope(app_id=5)],
            [AppScope(app_id=5), GlobalScope()],
        )

    def test_superset_does_not_match(self) -> None:
        assert not scopes_match(
            [AppScope(app_id=5), GlobalScope()],
            [AppScope(app_id=5)],
        )

    def test_subset_does_not_match(self) -> None:
        assert not scopes_match([AppScope(app_id=5)], [AppScope(app_id=5), GlobalScope()])

    def test_different_params_do_not_match(self) -> None:
        assert not scopes_match([AppScope(app_id=5)], [AppScope(app_id=6)])

    def test_empty_matches_empty(self) -> None:
        assert scopes_match([], [])


class TestSerialization:
    def test_wire_format(self) -> None:
        data = serialize_scopes([GlobalScope(), AppScope(app_id=5)])
        assert json.loads(data) == [{"type": "global"}, {"type": "app", "appId": 5}]

    def test_round_trip_preserves_order(self) -> None:
        scopes = (AppScope(app_id=7), GlobalScope(), AppScope(app_id=1))
        assert deserialize_scopes(serialize_scopes(scopes)) == scopes

    def test_round_trip_empty(self) -> None:
        assert deserialize_scopes(serialize_scopes([])) == ()

    def test_reads_original_format(self) -> None:
        assert deserialize_scopes('[{"type":"app","appId":42}]') == (AppScope(app_id=42),)

    @pytest.mark.parametrize(
        "data",
        [
            "not json",
            "",
            '{"type": "global"}',
            "[1]",
            '[{"type": "admin"}]',
            '[{"kind": "global"}]',
            '[{"type": "app"}]',
            '[{"type": "app", "appId": "5"}]',
            '[{"type": "app", "appId": true}]',
            '[{"type": "app", "appId": 1.5}]',
        ],
    )
    def test_malformed_raises(self, data: str) -> None:
        with pytest.raises(MalformedScopeData):
            deserialize_scopes(data)

    def test_malformed_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            deserialize_scopes("null")
