"""V8 coverage reader.

Ingests raw V8 capture snapshots (browser automation entries or Node's
NODE_V8_COVERAGE dumps), filters out dependency and runtime scripts, merges
snapshots and persists new ones.
"""

from __future__ import annotations

import copy
import itertools
import json
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from nextcov.config.constants import SNAPSHOT_PREFIX, SNAPSHOT_SUFFIX
from nextcov.core.errors import CoverageDataError
from nextcov.coverage.models import V8Coverage, V8ScriptCoverage

logger = structlog.get_logger()

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    "/node_modules/",
    "node:",
    "__vitest__",
    "__playwright__",
)

EntryFilter = Callable[[V8ScriptCoverage], bool]

_snapshot_seq = itertools.count()


@dataclass(frozen=True, slots=True)
class CoverageStats:
    total: int
    filtered: int
    urls: list[str] = field(default_factory=list)


def _compile_pattern(pattern: str | re.Pattern[str]) -> Callable[[str], bool]:
    if isinstance(pattern, re.Pattern):
        return lambda url: pattern.search(url) is not None
    if pattern == "node:":
        return lambda url: url.startswith("node:")
    return lambda url: pattern in url


class V8CoverageReader:
    """Reads, filters and merges V8 coverage snapshots.

    Usage::

        reader = V8CoverageReader(exclude_patterns=["/generated/"])
        coverage = reader.read_from_directory(Path(".v8-coverage"))
        coverage = reader.filter_entries(coverage)
    """

    def __init__(self, exclude_patterns: Iterable[str | re.Pattern[str]] | None = None) -> None:
        """Create a reader.

        Args:
            exclude_patterns: Extra substrings or compiled regexes that drop a
                URL. The built-in exclusions (dependencies, Node built-ins,
                test runner internals) always apply.
        """
        self.exclude_patterns: list[str | re.Pattern[str]] = [
            *DEFAULT_EXCLUDE_PATTERNS,
            *(exclude_patterns or ()),
        ]
        self._matchers = [_compile_pattern(p) for p in self.exclude_patterns]

    def is_excluded(self, url: str) -> bool:
        return any(match(url) for match in self._matchers)

    def read_from_playwright(self, entries: Sequence[dict[str, Any]]) -> V8Coverage:
        """Convert browser automation entries (no scriptId) into a snapshot.

        Script ids are assigned sequentially in input order.
        """
        result = []
        for index, entry in enumerate(entries):
            script = V8ScriptCoverage.from_dict(entry)
            script.script_id = str(index)
            result.append(script)
        return V8Coverage(result=result)

    def filter_entries(
        self, coverage: V8Coverage, custom_filter: EntryFilter | None = None
    ) -> V8Coverage:
        """Drop excluded entries.

        With ``custom_filter``, an entry is kept only if it passes both the
        exclusion rules and the predicate. The source map cache is carried
        over unchanged.
        """
        kept = [
            entry
            for entry in coverage.result
            if not self.is_excluded(entry.url)
            and (custom_filter is None or custom_filter(entry))
        ]
        return V8Coverage(result=kept, source_map_cache=coverage.source_map_cache)

    def merge(self, *coverages: V8Coverage) -> V8Coverage:
        """Concatenate snapshots in call order.

        Zero inputs yield an empty snapshot and one input is returned as is.
        The first non-empty source map cache is kept; caches are not combined.
        """
        if not coverages:
            return V8Coverage()
        if len(coverages) == 1:
            return coverages[0]
        result: list[V8ScriptCoverage] = []
        cache = None
        for cov in coverages:
            result.extend(cov.result)
            if cache is None and cov.source_map_cache:
                cache = cov.source_map_cache
        return V8Coverage(result=result, source_map_cache=cache)

    def get_source_urls(self, coverage: V8Coverage) -> list[str]:
        """Unique URLs in first-seen order."""
        return list(dict.fromkeys(entry.url for entry in coverage.result))

    def get_stats(self, coverage: V8Coverage) -> CoverageStats:
        filtered = self.filter_entries(coverage)
        return CoverageStats(
            total=len(coverage.result),
            filtered=len(filtered.result),
            urls=self.get_source_urls(filtered),
        )

    def read_file(self, path: Path) -> V8Coverage | None:
        """Read one snapshot; returns None (with a warning) if unreadable."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return V8Coverage.from_dict(data, source=str(path))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, CoverageDataError) as e:
            logger.warning("coverage_file_unreadable", path=str(path), error=str(e))
            return None

    def read_from_directory(self, directory: Path | str) -> V8Coverage:
        """Read and merge every ``coverage-*.json`` snapshot in filename order."""
        directory = Path(directory)
        files = (
            sorted(
                p
                for p in directory.iterdir()
                if p.is_file()
                and p.name.startswith(SNAPSHOT_PREFIX)
                and p.name.endswith(SNAPSHOT_SUFFIX)
            )
            if directory.is_dir()
            else []
        )
        if not files:
            logger.warning("no_coverage_files", directory=str(directory))
            return V8Coverage()

        snapshots = [cov for cov in (self.read_file(p) for p in files) if cov is not None]
        logger.debug("coverage_files_read", directory=str(directory), count=len(snapshots))
        return self.merge(*snapshots) if snapshots else V8Coverage()


def write_snapshot(coverage: V8Coverage, cache_dir: Path | str) -> Path:
    """Persist a snapshot under a unique, monotonically increasing name.

    Files are named ``coverage-<epoch-ms>-<seq>.json`` so concurrent captures
    never share a file.
    """
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)
    name = f"{SNAPSHOT_PREFIX}{int(time.time() * 1000)}-{next(_snapshot_seq):06d}{SNAPSHOT_SUFFIX}"
    path = cache_dir / name
    path.write_text(json.dumps(coverage.to_dict()), encoding="utf-8")
    logger.debug("snapshot_written", path=str(path), entries=len(coverage.result))
    return path


def merge_v8_by_url(coverage: V8Coverage) -> V8Coverage:
    """Combine entries that share a URL once query strings are removed.

    Cache-busting queries (``?v=123``) produce several entries for one
    script. The first entry is copied and later entries add their counts
    range by range (function i, range j).
    """
    merged: dict[str, V8ScriptCoverage] = {}
    for entry in coverage.result:
        url = entry.url.split("?", 1)[0]
        existing = merged.get(url)
        if existing is None:
            first = copy.deepcopy(entry)
            first.url = url
            merged[url] = first
            continue
        for fn_index, fn in enumerate(entry.functions):
            if fn_index >= len(existing.functions):
                break
            target = existing.functions[fn_index]
            for range_index, rng in enumerate(fn.ranges):
                if range_index < len(target.ranges):
                    target.ranges[range_index].count += rng.count

    if len(merged) < len(coverage.result):
        logger.debug(
            "entries_merged_by_url", before=len(coverage.result), after=len(merged)
        )
    return V8Coverage(result=list(merged.values()), source_map_cache=coverage.source_map_cache)
