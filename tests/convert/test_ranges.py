"""Tests for offset translation and innermost-range lookup."""

import pytest

from nextcov.convert.ranges import FilterStats, OffsetIndex, RangeIndex, overlaps_any
from nextcov.coverage.models import V8Function, V8Range


def _index(*ranges: tuple[int, int, int]) -> RangeIndex:
    return RangeIndex(V8Range(start, end, count) for start, end, count in ranges)


class TestRangeIndex:
    def test_given_nested_ranges_when_looked_up_then_innermost_wins(self) -> None:
        # Given
        index = _index((0, 100, 1), (10, 20, 5))

        # When / Then
        assert index.count_at(15) == 5
        assert index.count_at(50) == 1
        assert index.count_at(10) == 5
        assert index.count_at(20) == 1

    def test_given_range_end_when_looked_up_then_exclusive(self) -> None:
        index = _index((0, 100, 1))

        assert index.count_at(99) == 1
        assert index.count_at(100) is None
        assert index.count_at(-1) is None

    def test_given_sibling_blocks_when_looked_up_then_parent_between_them(self) -> None:
        index = _index((0, 100, 1), (10, 20, 0), (30, 40, 3))

        assert index.count_at(15) == 0
        assert index.count_at(25) == 1
        assert index.count_at(35) == 3
        assert index.count_at(45) == 1

    def test_given_unsorted_input_when_indexed_then_order_irrelevant(self) -> None:
        index = _index((30, 40, 3), (0, 100, 1), (10, 20, 0))

        assert [index.count_at(x) for x in (15, 25, 35)] == [0, 1, 3]

    def test_given_identical_ranges_when_looked_up_then_last_listed_wins(self) -> None:
        index = _index((0, 10, 1), (0, 10, 2))

        assert index.count_at(5) == 2
        assert index.count_at(10) is None

    def test_given_deeply_nested_ranges_when_looked_up_then_each_level_resolves(self) -> None:
        index = _index((0, 100, 1), (10, 90, 2), (20, 80, 3), (30, 70, 4))

        assert [index.count_at(x) for x in (5, 15, 25, 35, 75, 85, 95)] == [1, 2, 3, 4, 3, 2, 1]

    def test_given_empty_range_when_indexed_then_ignored(self) -> None:
        index = _index((0, 100, 1), (50, 50, 9))

        assert index.count_at(50) == 1

    def test_given_no_ranges_when_indexed_then_falsy(self) -> None:
        index = _index()

        assert not index
        assert index.count_at(0) is None


class TestFromFunctions:
    def test_given_functions_when_indexed_then_ranges_combined(self) -> None:
        functions = [
            V8Function("", [V8Range(0, 100, 1)]),
            V8Function("inner", [V8Range(40, 60, 7)]),
        ]

        index, stats = RangeIndex.from_functions(functions)

        assert index.count_at(50) == 7
        assert stats == FilterStats(original=2, filtered=2)

    def test_given_windows_when_indexed_then_outside_ranges_dropped(self) -> None:
        functions = [V8Function("", [V8Range(0, 10, 1), V8Range(500, 600, 2)])]

        index, stats = RangeIndex.from_functions(functions, [(0, 50)])

        assert index.count_at(5) == 1
        assert index.count_at(550) is None
        assert stats.original == 2
        assert stats.filtered == 1


class TestOverlapsAny:
    @pytest.mark.parametrize(
        ("start", "end", "expected"),
        [
            (0, 5, True),
            (10, 20, True),
            (20, 30, True),
            (21, 30, False),
            (0, 100, True),
        ],
    )
    def test_given_window_when_checked_then_bounds_inclusive(
        self, start: int, end: int, expected: bool
    ) -> None:
        assert overlaps_any(start, end, [(5, 20)]) is expected


class TestOffsetIndex:
    def test_given_ascii_when_indexed_then_bytes_equal_units(self) -> None:
        index = OffsetIndex("ab\ncd\n")

        assert index.ascii
        assert index.to_utf16(4) == 4
        assert index.position(0) == (1, 0)
        assert index.position(4) == (2, 1)
        assert index.line_count == 3

    def test_given_two_byte_character_when_translated_then_shifted(self) -> None:
        # "é" is two UTF-8 bytes and one UTF-16 unit
        index = OffsetIndex("é = 1\nx")

        assert not index.ascii
        assert index.to_utf16(0) == 0
        assert index.to_utf16(2) == 1
        assert index.to_utf16(7) == 6
        assert index.position(6) == (2, 0)
        assert index.length == 7

    def test_given_astral_character_when_translated_then_surrogate_pair_counted(self) -> None:
        # U+1F600 is four UTF-8 bytes and two UTF-16 units
        index = OffsetIndex("\U0001F600x")

        assert index.to_utf16(4) == 2
        assert index.length == 3

    def test_given_multiple_wide_characters_when_translated_then_deltas_accumulate(self) -> None:
        # "€" is three UTF-8 bytes, one UTF-16 unit
        index = OffsetIndex("€€a")

        assert index.to_utf16(3) == 1
        assert index.to_utf16(6) == 2
        assert index.to_utf16(7) == 3
