"""Generated-to-original position lookup over a decoded source map."""

from __future__ import annotations

import bisect
import posixpath
from dataclasses import dataclass

from nextcov.coverage.models import SourceMapData
from nextcov.sourcemaps.codec import decode_mappings


@dataclass(frozen=True, slots=True)
class OriginalPosition:
    source: str
    line: int  # 1-based
    column: int  # 0-based
    name: str | None = None


class SourceMapConsumer:
    """Resolves generated positions with greatest-lower-bound semantics.

    A generated position maps through the closest segment at or before it on
    the same generated line. Segments without a source (1-field) end the
    previous mapping, so positions after them resolve to None.
    """

    def __init__(self, source_map: SourceMapData) -> None:
        self.source_map = source_map
        self.sources = [self._resolve_source(s) for s in source_map.sources]
        self._lines = decode_mappings(source_map.mappings)
        for line in self._lines:
            line.sort(key=lambda seg: seg[0])
        self._columns = [[seg[0] for seg in line] for line in self._lines]

    def _resolve_source(self, source: str) -> str:
        root = self.source_map.source_root
        if root and not source.startswith(("/", "webpack:", "file:")):
            return posixpath.join(root, source)
        return source

    def original_position_for(self, line: int, column: int) -> OriginalPosition | None:
        """Map a generated (1-based line, 0-based column) to its original position."""
        index = line - 1
        if index < 0 or index >= len(self._lines):
            return None
        segments = self._lines[index]
        i = bisect.bisect_right(self._columns[index], column) - 1
        if i < 0:
            return None
        segment = segments[i]
        if len(segment) < 4 or not 0 <= segment[1] < len(self.sources):
            return None
        name = None
        if len(segment) == 5 and 0 <= segment[4] < len(self.source_map.names):
            name = self.source_map.names[segment[4]]
        return OriginalPosition(
            source=self.sources[segment[1]],
            line=segment[2] + 1,
            column=segment[3],
            name=name,
        )

    def source_content_for(self, source: str) -> str | None:
        content = self.source_map.sources_content
        if content is None:
            return None
        try:
            index = self.sources.index(source)
        except ValueError:
            return None
        return content[index] if index < len(content) else None
