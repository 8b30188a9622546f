"""Coverage fragment merging and whole-project completion.

Conversion emits one FileCoverage fragment per original file per script.
Fragments for the same path are combined with these semantics:

- identical statement/function/branch maps: counters are summed index-wise
- differing maps (instrumentation mismatch): the later fragment replaces
  the earlier one

Summing is commutative, so worker completion order does not matter unless
maps disagree.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from pathlib import Path

import structlog

from nextcov.coverage.istanbul import CoverageMap, FileCoverage
from nextcov.sourcemaps.sanitizer import glob_to_regex

logger = structlog.get_logger()


def merge_file_coverage(fragments: Iterable[FileCoverage]) -> FileCoverage:
    """Fold fragments for one path in order.

    Args:
        fragments: FileCoverage objects for the same path.

    Returns:
        The combined FileCoverage.
    """
    merged: FileCoverage | None = None
    for fc in fragments:
        merged = fc.copy() if merged is None else merged.merge(fc)
    if merged is None:
        raise ValueError("Cannot merge empty file coverage list")
    return merged


def merge_fragments(fragments: Iterable[FileCoverage]) -> CoverageMap:
    """Build a CoverageMap from fragments of any number of files."""
    coverage_map = CoverageMap()
    for fc in fragments:
        coverage_map.add_file_coverage(fc)
    return coverage_map


def merge_coverage_maps(*maps: CoverageMap) -> CoverageMap:
    merged = CoverageMap()
    for cm in maps:
        merged.merge(cm)
    return merged


def remove_phantom_branches(coverage_map: CoverageMap) -> int:
    """Drop branches whose locations are all empty at line 1, column 0.

    Module wrappers injected by bundlers map to the very start of the file
    and produce branches that do not exist in the source.

    Returns:
        Number of branches removed.
    """
    removed = 0
    for fc in coverage_map:
        phantom = [
            bid
            for bid, branch in fc.branch_map.items()
            if branch.locations
            and all(
                loc.is_empty and loc.start.line == 1 and loc.start.column == 0
                for loc in branch.locations
            )
        ]
        if not phantom:
            continue
        for bid in phantom:
            del fc.branch_map[bid]
            del fc.b[bid]
        # Keep ids sequential
        ids = list(fc.branch_map)
        fc.branch_map = {str(i): fc.branch_map[old] for i, old in enumerate(ids)}
        fc.b = {str(i): fc.b[old] for i, old in enumerate(ids)}
        removed += len(phantom)
    if removed:
        logger.debug("phantom_branches_removed", count=removed)
    return removed


def find_source_files(
    project_root: Path | str, include: Sequence[str], exclude: Sequence[str] = ()
) -> list[Path]:
    """Files under ``project_root`` matching an include glob and no exclude glob."""
    root = Path(project_root)
    excluded = [glob_to_regex(p) for p in exclude]
    found: dict[Path, None] = {}
    for pattern in include:
        for path in root.glob(pattern):
            if not path.is_file() or "node_modules" in path.parts:
                continue
            rel = path.relative_to(root).as_posix()
            if any(rx.match(rel) for rx in excluded):
                continue
            found[path.resolve()] = None
    return sorted(found)


def add_uncovered_files(coverage_map: CoverageMap, source_files: Iterable[Path | str]) -> int:
    """Add all-zero coverage for source files absent from the map.

    Files are parsed with the grammar matching their extension. Unreadable
    or unparseable files are skipped with a log line.

    Returns:
        Number of files added.
    """
    from nextcov.convert.ast_converter import instrument_source
    from nextcov.convert.parser import language_for_path

    present = {p.replace("\\", "/") for p in coverage_map.files()}
    added = 0
    for source_file in source_files:
        path = str(source_file)
        if path.replace("\\", "/") in present:
            continue
        language = language_for_path(path)
        if language is None:
            continue
        try:
            code = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("uncovered_file_unreadable", path=path, error=str(e))
            continue
        fc = instrument_source(code, path, language)
        coverage_map.add_file_coverage(fc.zeroed())
        added += 1
    if added:
        logger.debug("uncovered_files_added", count=added)
    return added


def load_coverage_json(path: Path | str) -> CoverageMap | None:
    """Read an Istanbul ``coverage-final.json``; None if missing or malformed."""
    path = Path(path)
    if not path.is_file():
        logger.debug("coverage_json_missing", path=str(path))
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return CoverageMap.from_dict(data)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning("coverage_json_unreadable", path=str(path), error=str(e))
        return None


def write_coverage_json(coverage_map: CoverageMap, path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(coverage_map.to_dict()), encoding="utf-8")
    return path
