"""Unit tests for core.gates module."""

import pytest

from core.gates import parse_gates, total_penalty


class TestParseGates:
    """Tests for gate penalty string parsing."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("0,0,2,0,50", [0, 0, 2, 0, 50]),
            ("0 0 2 0 50", [0, 0, 2, 0, 50]),
            ("0, 2 ,50", [0, 2, 50]),
            ("0,0,2,,,", [0, 0, 2]),
            ("0,3,2", [0, None, 2]),
            ("0,x,50", [0, None, 50]),
            ("", []),
            ("   ", []),
        ],
    )
    def test_parse(self, raw: str, expected: list[int | None]) -> None:
        assert parse_gates(raw) == expected

    def test_non_string_yields_empty(self) -> None:
        assert parse_gates(None) == []
        assert parse_gates(42) == []


class TestTotalPenalty:
    """Tests for penalty summation."""

    def test_sum_ignores_invalid(self) -> None:
        assert total_penalty([0, 2, None, 50]) == 52

    def test_empty(self) -> None:
        assert total_penalty([]) == 0


class TestPackageExports:
    """Gate helpers are part of the core package surface."""

    def test_exported_from_core(self) -> None:
        import core

        assert core.parse_gates is parse_gates
        assert core.total_penalty is total_penalty
