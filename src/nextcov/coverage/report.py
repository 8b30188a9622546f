"""Structured coverage summary data.

Produces JSON-ready data only; rendering is left to reporters.

Output schema for build_summary:
{
    "summary": {
        "statements": {"total": int, "covered": int, "skipped": int, "pct": float},
        "branches": {...},
        "functions": {...},
        "lines": {...},
        "total_files": int
    },
    "classification": {"statements": "low" | "medium" | "high", ...},
    "files": [
        {
            "path": str,
            "statements": {...}, "branches": {...}, "functions": {...}, "lines": {...},
            "missed_lines": [int, ...],
            "missed_lines_truncated": bool  # only when truncated
        },
        ...
    ]
}
"""

from typing import Any, Literal

from nextcov.config.models import Watermarks
from nextcov.coverage.istanbul import METRICS, CoverageMap, CoverageSummary

Level = Literal["low", "medium", "high"]


def classify_pct(pct: float, watermark: tuple[float, float]) -> Level:
    low, high = watermark
    if pct < low:
        return "low"
    if pct >= high:
        return "high"
    return "medium"


def classify(summary: CoverageSummary, watermarks: Watermarks | None = None) -> dict[str, Level]:
    """Classify each metric's percentage against its watermarks.

    Args:
        summary: Summary to classify. It is not modified.
        watermarks: Thresholds; defaults to [50, 80] for every metric.

    Returns:
        Metric name -> "low" / "medium" / "high".
    """
    watermarks = watermarks or Watermarks()
    return {
        name: classify_pct(getattr(summary, name).pct, getattr(watermarks, name))
        for name in METRICS
    }


def compute_file_stats(coverage_map: CoverageMap, max_missed_lines: int = 20) -> list[dict[str, Any]]:
    """Per-file statistics, sorted by path."""
    file_stats = []
    for path in sorted(coverage_map.files()):
        fc = coverage_map.file_coverage_for(path)
        stats: dict[str, Any] = {"path": path, **fc.summary().to_dict()}
        missed = fc.uncovered_lines()
        if len(missed) > max_missed_lines:
            stats["missed_lines"] = missed[:max_missed_lines]
            stats["missed_lines_truncated"] = True
        else:
            stats["missed_lines"] = missed
        file_stats.append(stats)
    return file_stats


def build_summary(
    coverage_map: CoverageMap,
    *,
    watermarks: Watermarks | None = None,
    include_files: bool = True,
    max_files: int | None = None,
    max_missed_lines: int = 20,
) -> dict[str, Any]:
    """Build a structured coverage summary.

    Args:
        coverage_map: The coverage to summarize.
        watermarks: Thresholds used for classification.
        include_files: Whether to include per-file details.
        max_files: Limit number of files (lowest line coverage first). None = all.
        max_missed_lines: Max missed lines to list per file.

    Returns:
        Structured dict suitable for JSON serialization.
    """
    summary = coverage_map.summary()
    result: dict[str, Any] = {
        "summary": {**summary.to_dict(), "total_files": len(coverage_map)},
        "classification": classify(summary, watermarks),
    }

    if include_files:
        file_stats = compute_file_stats(coverage_map, max_missed_lines)
        # Lowest coverage first to surface problem areas
        file_stats.sort(key=lambda f: f["lines"]["pct"])
        if max_files is not None:
            file_stats = file_stats[:max_files]
        result["files"] = file_stats

    return result
