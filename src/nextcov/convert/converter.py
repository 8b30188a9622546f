"""Whole-run V8 to Istanbul conversion.

``CoverageConverter.convert`` drives one processing run:

1. prime source maps from Node's ``source-map-cache`` and merge entries
   that share a URL
2. resolve code and source map for every entry (disk artifact, inline data
   URL, or dev-mode eval bundle)
3. skip bundles whose project sources are all provided by other bundles,
   and large server bundles that are mostly redundant
4. dispatch one ``ConvertTask`` per remaining entry through an executor
5. merge fragments, rewrite paths to absolute project files, and drop
   phantom branches
"""

from __future__ import annotations

from concurrent.futures import CancelledError, Future
from dataclasses import dataclass
from pathlib import Path

import structlog

from nextcov.config.constants import (
    FILE_EXISTS_CACHE_MAX_SIZE,
    HEAVY_ENTRY_THRESHOLD,
    LARGE_BUNDLE_THRESHOLD,
    REDUNDANT_SOURCE_RATIO,
    SLOW_ENTRY_MS,
    SOURCE_MAP_RANGE_THRESHOLD,
)
from nextcov.config.models import NextcovConfig
from nextcov.convert.ast_converter import ConversionResult, ConvertTask
from nextcov.core.cache import BoundedCache
from nextcov.core.errors import WorkerPoolError
from nextcov.core.logging import timed
from nextcov.coverage.istanbul import CoverageMap, FileCoverage
from nextcov.coverage.merge import (
    add_uncovered_files,
    find_source_files,
    merge_fragments,
    remove_phantom_branches,
)
from nextcov.coverage.models import SourceMapData, V8Coverage, V8ScriptCoverage
from nextcov.coverage.reader import merge_v8_by_url
from nextcov.sourcemaps.dev_mode import DevModeSourceMapExtractor
from nextcov.sourcemaps.loader import SourceMapLoader
from nextcov.sourcemaps.paths import FILE_PROTOCOL, is_webpack_url
from nextcov.sourcemaps.sanitizer import (
    compute_src_code_ranges,
    get_source_rejection_reason,
    is_source_excluded,
    sanitize_source_map,
)
from nextcov.worker.pool import Executor, create_executor

logger = structlog.get_logger()

SOURCE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx")


@dataclass(slots=True)
class _ResolvedEntry:
    entry: V8ScriptCoverage
    code: str
    source_map: SourceMapData | None
    file_path: str | None


class CoverageConverter:
    """Converts captured V8 coverage into a CoverageMap of project files.

    Usage::

        converter = CoverageConverter(config)
        coverage_map = converter.convert(v8_coverage)
        summary = coverage_map.summary()
    """

    def __init__(
        self,
        config: NextcovConfig | None = None,
        *,
        loader: SourceMapLoader | None = None,
        executor: Executor | None = None,
        dev_mode: DevModeSourceMapExtractor | None = None,
    ) -> None:
        """Create a converter.

        Args:
            config: Run configuration. Defaults apply when omitted.
            loader: Source loader; built from ``config.project`` when omitted.
            executor: Where tasks run. When omitted each ``convert`` call
                creates a pool sized by ``config.workers`` and tears it down.
            dev_mode: Extractor for eval-wrapped dev bundles.
        """
        self.config = config or NextcovConfig()
        project = self.config.project
        self.project_root = Path(project.project_root).resolve()
        self.source_root = project.source_root
        self.exclude_patterns = list(project.exclude)
        self.loader = loader or SourceMapLoader(
            self.project_root, project.build_dir, project.source_root
        )
        self.dev_mode = dev_mode
        self._executor = executor
        self._exists_cache: BoundedCache[str, bool] = BoundedCache(FILE_EXISTS_CACHE_MAX_SIZE)

    # -- public API ----------------------------------------------------------

    def convert(self, coverage: V8Coverage, *, include_uncovered: bool = False) -> CoverageMap:
        """Convert a capture into a CoverageMap keyed by absolute source path.

        Args:
            coverage: Raw (already filtered) V8 coverage.
            include_uncovered: Also add all-zero coverage for project files
                matched by the include globs that never ran.
        """
        with timed("convert", entries=len(coverage.result)):
            self.loader.load_from_v8_cache(coverage)
            merged = merge_v8_by_url(coverage)

            resolved = [r for r in (self._resolve(e) for e in merged.result) if r is not None]
            skipped = self._redundant_bundles(resolved)
            if skipped:
                logger.debug(
                    "bundles_skipped",
                    skipped=len(skipped),
                    processing=len(resolved) - len(skipped),
                )

            tasks = [
                task
                for r in resolved
                if r.entry.url not in skipped and (task := self._build_task(r)) is not None
            ]
            fragments = self._run(tasks)

            coverage_map = self.normalize_file_paths(merge_fragments(fragments))
            remove_phantom_branches(coverage_map)

            if include_uncovered:
                project = self.config.project
                add_uncovered_files(
                    coverage_map,
                    find_source_files(self.project_root, project.include, project.exclude),
                )
        return coverage_map

    def normalize_file_path(self, file_path: str) -> str | None:
        """Absolute project path for a fragment path, or None to drop it.

        The path is cut at its last ``/<source_root>/`` segment, resolved
        against the project root, and kept only for JS/TS files that exist.
        """
        normalized = file_path.replace("\\", "/")
        if not normalized.endswith(SOURCE_EXTENSIONS):
            return None
        if not normalized.startswith("/"):
            normalized = "/" + normalized
        marker = f"/{self.source_root}/"
        index = normalized.rfind(marker)
        if index == -1:
            return None
        absolute = str(self.project_root / normalized[index + 1 :])
        return absolute if self._file_exists(absolute) else None

    def normalize_file_paths(self, coverage_map: CoverageMap) -> CoverageMap:
        normalized = CoverageMap()
        for fc in coverage_map:
            path = self.normalize_file_path(fc.path)
            if path is None:
                logger.debug("file_dropped", path=fc.path)
                continue
            normalized.add_file_coverage(fc.copy(path))
        return normalized

    # -- resolution ----------------------------------------------------------

    def _resolve(self, entry: V8ScriptCoverage) -> _ResolvedEntry | None:
        """Find code, source map and attribution path for one entry."""
        if not entry.url:
            logger.debug("entry_without_url", script_id=entry.script_id)
            return None

        if entry.source and self.dev_mode is not None and is_webpack_url(entry.url):
            extracted = self.dev_mode.extract_from_script_source(entry.url, entry.source)
            if extracted is not None:
                return _ResolvedEntry(
                    entry=entry,
                    code=entry.source,
                    source_map=self.dev_mode.to_standard_source_map(extracted),
                    file_path=str(self.project_root / extracted.original_path),
                )

        source_file = self.loader.load_source(entry.url)
        code = entry.source or (source_file.code if source_file is not None else "")
        if not code:
            logger.debug("source_unavailable", url=entry.url)
            return None

        source_map = source_file.source_map if source_file is not None else None
        if source_map is None and entry.source:
            source_map = self.loader.extract_inline_source_map(entry.source)

        file_path: str | None = None
        if source_file is not None and source_file.code:
            file_path = source_file.path
        else:
            path = self.loader.url_to_file_path(entry.url)
            file_path = str(path) if path is not None else None
        return _ResolvedEntry(entry=entry, code=code, source_map=source_map, file_path=file_path)

    def _valid_sources(self, source_map: SourceMapData | None) -> set[str]:
        if source_map is None or not source_map.sources:
            return set()
        contents = source_map.sources_content or []
        normalize = self.loader.normalize_source_path
        valid = set()
        for i, source in enumerate(source_map.sources):
            content = contents[i] if i < len(contents) else None
            if get_source_rejection_reason(source, content, str(self.project_root), normalize):
                continue
            normalized = normalize(source)
            if normalized and not is_source_excluded(normalized, self.exclude_patterns):
                valid.add(normalized)
        return valid

    def _redundant_bundles(self, resolved: list[_ResolvedEntry]) -> set[str]:
        """URLs of bundles whose project sources other bundles already provide."""
        bundle_sources: dict[str, set[str]] = {}
        providers: dict[str, list[str]] = {}
        for r in resolved:
            sources = self._valid_sources(r.source_map)
            bundle_sources[r.entry.url] = sources
            for source in sources:
                providers.setdefault(source, []).append(r.entry.url)

        skipped: set[str] = set()

        def provided_elsewhere(source: str, url: str) -> bool:
            return any(other != url and other not in skipped for other in providers[source])

        for url, sources in bundle_sources.items():
            if sources and all(provided_elsewhere(s, url) for s in sources):
                skipped.add(url)
                logger.debug("redundant_bundle_skipped", url=url, sources=len(sources))

        for r in resolved:
            url = r.entry.url
            if url in skipped or not url.startswith(FILE_PROTOCOL):
                continue
            if len(r.code) < LARGE_BUNDLE_THRESHOLD:
                continue
            sources = bundle_sources[url]
            if not sources:
                continue
            redundant = sum(1 for s in sources if provided_elsewhere(s, url))
            ratio = redundant / len(sources)
            if ratio >= REDUNDANT_SOURCE_RATIO:
                skipped.add(url)
                logger.debug(
                    "large_bundle_skipped",
                    url=url,
                    size=len(r.code),
                    redundant=redundant,
                    sources=len(sources),
                )
        return skipped

    def _build_task(self, r: _ResolvedEntry) -> ConvertTask | None:
        source_map = r.source_map
        ranges: list[tuple[int, int]] | None = None
        if source_map is not None:
            source_map = sanitize_source_map(
                source_map,
                self.project_root,
                self.loader.normalize_source_path,
                self.exclude_patterns,
            )
            if source_map is None:
                logger.debug("source_map_rejected", url=r.entry.url)
                return None
            if len(r.code) > SOURCE_MAP_RANGE_THRESHOLD:
                if self._primary_source_excluded(r.entry.url, source_map):
                    logger.debug("large_bundle_primary_excluded", url=r.entry.url)
                    return None
                ranges = compute_src_code_ranges(source_map, r.code) or None

        if len(r.code) > HEAVY_ENTRY_THRESHOLD:
            logger.debug(
                "heavy_entry",
                url=r.entry.url,
                size=len(r.code),
                windows=len(ranges) if ranges else 0,
            )
        return ConvertTask(
            code=r.code,
            url=r.entry.url,
            functions=r.entry.functions,
            source_map=source_map,
            src_code_ranges=ranges,
            file_path=r.file_path,
        )

    def _primary_source_excluded(self, url: str, source_map: SourceMapData) -> bool:
        """True if the source named like the bundle (``middleware.js`` -> ``middleware.ts``) is excluded."""
        if not self.exclude_patterns:
            return False
        bundle_name = url.split("?", 1)[0].rsplit("/", 1)[-1].removesuffix(".js")
        for source in source_map.sources:
            stem = source.rsplit("/", 1)[-1]
            for ext in SOURCE_EXTENSIONS:
                stem = stem.removesuffix(ext)
            if stem == bundle_name:
                return is_source_excluded(source, self.exclude_patterns)
        return False

    # -- execution -----------------------------------------------------------

    def _run(self, tasks: list[ConvertTask]) -> list[FileCoverage]:
        owned = self._executor is None
        executor = self._executor or create_executor(self.config.workers.max_workers)
        fragments: list[FileCoverage] = []
        failed = 0
        try:
            futures: list[tuple[ConvertTask, Future[ConversionResult]]] = [
                (task, executor.submit(task)) for task in tasks
            ]
            for task, future in futures:
                try:
                    result = future.result()
                except (WorkerPoolError, CancelledError) as e:
                    failed += 1
                    logger.warning("conversion_rejected", url=task.url, error=str(e))
                    continue
                if not result.success:
                    failed += 1
                    logger.debug("conversion_failed", url=task.url, error=result.error)
                    continue
                if result.timings.total_ms > SLOW_ENTRY_MS:
                    logger.debug(
                        "slow_entry",
                        url=task.url,
                        parse_ms=round(result.timings.parse_ms, 1),
                        convert_ms=round(result.timings.convert_ms, 1),
                        total_ms=round(result.timings.total_ms, 1),
                        ranges=result.filter_stats.original,
                        ranges_kept=result.filter_stats.filtered,
                        unmapped=result.filter_stats.unmapped,
                    )
                fragments.extend(result.files)
        finally:
            if owned:
                executor.shutdown()
        logger.debug(
            "entries_converted", converted=len(tasks) - failed, failed=failed, files=len(fragments)
        )
        return fragments

    def _file_exists(self, path: str) -> bool:
        cached = self._exists_cache.get(path)
        if cached is not None:
            return cached
        exists = Path(path).is_file()
        self._exists_cache.set(path, exists)
        return exists
