"""V8 capture handling and Istanbul coverage data.

Usage:
    from nextcov.coverage import V8CoverageReader, merge_coverage_maps, build_summary

    reader = V8CoverageReader()
    coverage = reader.filter_entries(reader.read_from_directory(cache_dir))

    merged = merge_coverage_maps(client_map, server_map)
    summary = build_summary(merged)
"""

from nextcov.coverage.istanbul import (
    BranchMapping,
    CoverageMap,
    CoverageSummary,
    CoverageTotals,
    FileCoverage,
    FunctionMapping,
    Location,
    Position,
)
from nextcov.coverage.merge import (
    add_uncovered_files,
    load_coverage_json,
    merge_coverage_maps,
    merge_file_coverage,
    merge_fragments,
    remove_phantom_branches,
    write_coverage_json,
)
from nextcov.coverage.models import (
    CachedSourceMapEntry,
    SourceMapData,
    V8Coverage,
    V8Function,
    V8Range,
    V8ScriptCoverage,
)
from nextcov.coverage.reader import (
    CoverageStats,
    V8CoverageReader,
    merge_v8_by_url,
    write_snapshot,
)
from nextcov.coverage.report import build_summary, classify

__all__ = [
    # V8 data
    "V8Coverage",
    "V8ScriptCoverage",
    "V8Function",
    "V8Range",
    "SourceMapData",
    "CachedSourceMapEntry",
    # Reader
    "V8CoverageReader",
    "CoverageStats",
    "merge_v8_by_url",
    "write_snapshot",
    # Istanbul data
    "CoverageMap",
    "FileCoverage",
    "CoverageSummary",
    "CoverageTotals",
    "BranchMapping",
    "FunctionMapping",
    "Location",
    "Position",
    # Merge
    "merge_file_coverage",
    "merge_fragments",
    "merge_coverage_maps",
    "remove_phantom_branches",
    "add_uncovered_files",
    "load_coverage_json",
    "write_coverage_json",
    # Report
    "build_summary",
    "classify",
]
