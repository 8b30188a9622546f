"""Offset bookkeeping for coverage conversion.

Three offset spaces meet here:

- tree-sitter reports UTF-8 byte offsets,
- V8 ranges and source map columns count UTF-16 code units,
- Istanbul locations use 1-based lines and 0-based UTF-16 columns.

``OffsetIndex`` translates between them; ``RangeIndex`` answers "which count
applies at this offset" with innermost-range-wins semantics.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from nextcov.coverage.models import V8Function, V8Range


class OffsetIndex:
    """Byte offset -> UTF-16 offset -> (line, column) for one text."""

    def __init__(self, text: str) -> None:
        self.ascii = text.isascii()
        self._byte_marks: list[int] = []
        self._byte_deltas: list[int] = []
        self._line_starts = [0]

        if self.ascii:
            start = text.find("\n")
            while start != -1:
                self._line_starts.append(start + 1)
                start = text.find("\n", start + 1)
            self.length = len(text)
            return

        byte_pos = 0
        unit_pos = 0
        for ch in text:
            cp = ord(ch)
            if cp < 0x80:
                byte_pos += 1
                unit_pos += 1
            else:
                byte_pos += 2 if cp < 0x800 else 3 if cp < 0x10000 else 4
                unit_pos += 1 if cp < 0x10000 else 2
                self._byte_marks.append(byte_pos)
                self._byte_deltas.append(byte_pos - unit_pos)
            if ch == "\n":
                self._line_starts.append(unit_pos)
        self.length = unit_pos

    def to_utf16(self, byte_offset: int) -> int:
        if self.ascii or not self._byte_marks:
            return byte_offset
        i = bisect.bisect_right(self._byte_marks, byte_offset) - 1
        return byte_offset if i < 0 else byte_offset - self._byte_deltas[i]

    def position(self, offset: int) -> tuple[int, int]:
        """UTF-16 offset -> (1-based line, 0-based column)."""
        line = bisect.bisect_right(self._line_starts, offset) - 1
        return line + 1, offset - self._line_starts[line]

    @property
    def line_count(self) -> int:
        return len(self._line_starts)


@dataclass(frozen=True, slots=True)
class FilterStats:
    """Ranges seen vs. ranges kept inside the restricting windows."""

    original: int = 0
    filtered: int = 0
    unmapped: int = 0


def overlaps_any(start: int, end: int, windows: Sequence[tuple[int, int]]) -> bool:
    return any(not (end < lo or start > hi) for lo, hi in windows)


class RangeIndex:
    """Innermost-range lookup over nested V8 ranges.

    The nested ranges are flattened into contiguous segments with one count
    each, so a lookup is a single binary search. For offset ``x`` the result
    is the count of the smallest range containing ``x``; equal ranges resolve
    to the one listed last.
    """

    def __init__(self, ranges: Iterable[V8Range]) -> None:
        ordered = sorted(
            enumerate(ranges), key=lambda item: (item[1].start_offset, -item[1].end_offset, item[0])
        )
        self._starts: list[int] = []
        self._counts: list[int | None] = []
        stack: list[tuple[int, int]] = []  # (end, count)

        for _, rng in ordered:
            start, end = rng.start_offset, rng.end_offset
            if end <= start:
                continue
            self._close(stack, start)
            if stack:
                end = min(end, stack[-1][0])
            stack.append((end, rng.count))
            self._emit(start, rng.count)
        self._close(stack, None)

    def _close(self, stack: list[tuple[int, int]], until: int | None) -> None:
        while stack and (until is None or stack[-1][0] <= until):
            end, _ = stack.pop()
            self._emit(end, stack[-1][1] if stack else None)

    def _emit(self, offset: int, count: int | None) -> None:
        if self._starts and self._starts[-1] == offset:
            self._counts[-1] = count
        else:
            self._starts.append(offset)
            self._counts.append(count)

    @classmethod
    def from_functions(
        cls,
        functions: Iterable[V8Function],
        windows: Sequence[tuple[int, int]] | None = None,
    ) -> tuple[RangeIndex, FilterStats]:
        """Index every range of every function.

        With ``windows``, ranges that overlap none of them are dropped.
        """
        all_ranges = [rng for fn in functions for rng in fn.ranges]
        if windows:
            kept = [
                rng for rng in all_ranges if overlaps_any(rng.start_offset, rng.end_offset, windows)
            ]
        else:
            kept = all_ranges
        return cls(kept), FilterStats(original=len(all_ranges), filtered=len(kept))

    def count_at(self, offset: int) -> int | None:
        """Count of the innermost range containing ``offset``, or None if uncovered."""
        i = bisect.bisect_right(self._starts, offset) - 1
        if i < 0:
            return None
        return self._counts[i]

    def __bool__(self) -> bool:
        return bool(self._starts)
