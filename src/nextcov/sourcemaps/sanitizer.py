"""Source map sanitization.

Bundler maps reference framework internals, externals and dependencies next
to project files. Those sources are rejected, their mapping segments are
removed and the surviving source indices are renumbered, so every remaining
mapping resolves to a project file with content.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import replace
from functools import lru_cache
from pathlib import Path

import structlog

from nextcov.config.constants import (
    SOURCE_MAP_GAP_THRESHOLD,
    SOURCE_MAP_PADDING_AFTER,
    SOURCE_MAP_PADDING_BEFORE,
)
from nextcov.core.errors import SourceMapError
from nextcov.coverage.models import SourceMapData
from nextcov.sourcemaps.codec import DecodedMappings, decode_mappings, encode_mappings
from nextcov.sourcemaps.paths import is_node_modules_path

logger = structlog.get_logger()

_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:[/\\]")
_VITE_STYLE_SOURCE = re.compile(r"^[^/\\]+\.(tsx?|jsx?|vue|svelte)$")

Normalizer = Callable[[str], str]


def get_source_rejection_reason(
    source: str | None,
    content: str | None,
    project_root: str,
    normalize: Normalizer,
) -> str | None:
    """Why ``source`` cannot be attributed to a project file, or None if it can."""
    if not source or not source.strip():
        return "empty source"
    if source.startswith("external ") or "external%20commonjs" in source:
        return "webpack external"

    normalized = normalize(source)
    if not normalized.strip():
        return "normalized to empty path"

    if _WINDOWS_ABSOLUTE.match(source) and not source.lower().startswith(project_root.lower()):
        return "absolute path outside project"
    if source.startswith("/") and not source.startswith(project_root):
        return "absolute path outside project"

    if is_node_modules_path(normalized):
        return "node_modules"

    if (
        not _VITE_STYLE_SOURCE.match(normalized)
        and "src/" not in normalized
        and "/src/" not in source
        and "\\src\\" not in source
    ):
        return "no src/ in path"

    if not content or not isinstance(content, str):
        return "no sourcesContent"
    return None


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a path glob: ``**/`` spans directories, ``*`` and ``?`` stay within one."""
    pattern = pattern.replace("\\", "/")
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + "$")


def is_source_excluded(source_path: str, exclude_patterns: Sequence[str]) -> bool:
    """True if the path matches any exclude glob (``**`` spans directories)."""
    if not exclude_patterns:
        return False
    normalized = source_path.replace("\\", "/")
    return any(glob_to_regex(p).match(normalized) for p in exclude_patterns)


def sanitize_source_map(
    source_map: SourceMapData,
    project_root: Path | str,
    normalize: Normalizer,
    exclude_patterns: Sequence[str] = (),
) -> SourceMapData | None:
    """Drop unusable sources and the mapping segments pointing at them.

    Returns None when no source survives, when every surviving source is
    excluded, or when the mappings cannot be decoded.
    """
    if not source_map.sources:
        return None

    root = str(project_root)
    contents = source_map.sources_content or []
    valid: list[int] = []
    rejected: dict[str, int] = {}
    for i, source in enumerate(source_map.sources):
        content = contents[i] if i < len(contents) else None
        reason = get_source_rejection_reason(source, content, root, normalize)
        if reason is None:
            valid.append(i)
        else:
            rejected[reason] = rejected.get(reason, 0) + 1

    if not valid:
        logger.debug("source_map_rejected", sources=len(source_map.sources), reasons=rejected)
        return None

    if exclude_patterns and all(
        is_source_excluded(normalize(source_map.sources[i]), exclude_patterns) for i in valid
    ):
        logger.debug("source_map_all_excluded", sources=len(valid))
        return None

    logger.debug(
        "source_map_sanitized",
        accepted=len(valid),
        total=len(source_map.sources),
        reasons=rejected,
    )

    if len(valid) == len(source_map.sources):
        return replace(source_map, sources=[normalize(s) for s in source_map.sources])

    try:
        decoded = decode_mappings(source_map.mappings)
    except SourceMapError as e:
        logger.debug("source_map_decode_failed", error=e.message)
        return None

    new_index = {old: new for new, old in enumerate(valid)}
    filtered: DecodedMappings = []
    for line in decoded:
        kept = []
        for seg in line:
            if len(seg) == 1:
                kept.append(seg)
            elif seg[1] in new_index:
                kept.append((seg[0], new_index[seg[1]], *seg[2:]))
        filtered.append(kept)

    return replace(
        source_map,
        sources=[normalize(source_map.sources[i]) for i in valid],
        sources_content=[contents[i] if i < len(contents) else None for i in valid],
        mappings=encode_mappings(filtered),
    )


def _utf16_len(text: str) -> int:
    if text.isascii():
        return len(text)
    return len(text.encode("utf-16-le")) // 2


def compute_src_code_ranges(source_map: SourceMapData, code: str) -> list[tuple[int, int]]:
    """Padded ``(start, end)`` windows of generated code that map to a source.

    Mapped offsets more than the gap threshold apart start a new window.
    Offsets count UTF-16 code units, matching V8 ranges.
    """
    if not source_map.mappings or not source_map.sources:
        return []
    try:
        decoded = decode_mappings(source_map.mappings)
    except SourceMapError:
        return []

    line_starts = [0]
    for line in code.split("\n"):
        line_starts.append(line_starts[-1] + _utf16_len(line) + 1)

    offsets = sorted(
        line_starts[i] + seg[0]
        for i, line in enumerate(decoded)
        if i < len(line_starts)
        for seg in line
        if len(seg) >= 4
    )
    if not offsets:
        return []

    size = _utf16_len(code)
    ranges = []
    start = end = offsets[0]
    for current in offsets[1:]:
        if current - end > SOURCE_MAP_GAP_THRESHOLD:
            ranges.append(
                (max(0, start - SOURCE_MAP_PADDING_BEFORE), min(size, end + SOURCE_MAP_PADDING_AFTER))
            )
            start = current
        end = current
    ranges.append(
        (max(0, start - SOURCE_MAP_PADDING_BEFORE), min(size, end + SOURCE_MAP_PADDING_AFTER))
    )
    return ranges
