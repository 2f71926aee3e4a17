"""Tests for awf_engine.guards — guard parsing and evaluation."""

import pytest

from awf_engine.errors import GuardSyntaxError
from awf_engine.guards import evaluate_guard, parse_guard, resolve_path

CTX = {
    "rel": {"kiera": {"trust": 25, "romance": 0}},
    "flag": {"veil_open": True, "betrayed": False},
    "obj": {"meet_kiera": "complete"},
    "scene": "market",
}


class TestResolvePath:
    def test_nested(self) -> None:
        assert resolve_path(CTX, "rel.kiera.trust") == 25

    def test_missing_segment_is_none(self) -> None:
        assert resolve_path(CTX, "rel.thorne.trust") is None
        assert resolve_path(CTX, "scene.sub") is None


class TestComparisons:
    @pytest.mark.parametrize("expr, expected", [
        ("gte(rel.kiera.trust, 20)", True),
        ("gt(rel.kiera.trust, 25)", False),
        ("lt(rel.kiera.trust, 30)", True),
        ("lte(rel.kiera.trust, 25)", True),
        ("eq(obj.meet_kiera, \"complete\")", True),
        ("eq(obj.meet_kiera, complete)", True),
        ("ne(scene, 'chapel')", True),
        ("eq(flag.veil_open, true)", True),
    ])
    def test_operators(self, expr: str, expected: bool) -> None:
        assert evaluate_guard(expr, CTX) is expected

    def test_missing_path_fails_ordering(self) -> None:
        assert evaluate_guard("gte(rel.thorne.trust, 0)", CTX) is False
        assert evaluate_guard("lt(rel.thorne.trust, 100)", CTX) is False

    def test_mismatched_types_fail_ordering(self) -> None:
        assert evaluate_guard("gt(scene, 3)", CTX) is False


class TestCombinators:
    def test_and_or_not(self) -> None:
        assert evaluate_guard("and(gte(rel.kiera.trust, 20), not(has(flag.betrayed)))", CTX)
        assert evaluate_guard("or(eq(scene, chapel), has(flag.veil_open))", CTX)
        assert not evaluate_guard("not(has(flag.veil_open))", CTX)

    def test_bare_path_is_truthiness(self) -> None:
        assert evaluate_guard("flag.veil_open", CTX)
        assert not evaluate_guard("flag.betrayed", CTX)

    def test_no_guard_passes(self) -> None:
        assert evaluate_guard(None, CTX) is True


class TestSyntaxErrors:
    @pytest.mark.parametrize("expr", [
        "",
        "   ",
        "gte(rel.kiera.trust 20)",
        "gte(rel.kiera.trust, 20",
        "explode(rel.kiera.trust, 1)",
        "not(has(a), has(b))",
        "has(a) extra",
        "eq(a, b) $",
    ])
    def test_rejected(self, expr: str) -> None:
        with pytest.raises(GuardSyntaxError):
            parse_guard(expr)
