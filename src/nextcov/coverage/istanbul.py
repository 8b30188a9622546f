"""Istanbul-shaped coverage model.

A FileCoverage holds three location maps (statements, functions, branches)
keyed by sequential string ids, plus parallel hit-count tables:

- ``s``: statement id -> hits
- ``f``: function id -> hits
- ``b``: branch id -> hits per branch location

Merging two FileCoverage objects for one path sums their counters when the
three maps are structurally identical. Otherwise the later object replaces
the earlier one; no reconciliation of differing maps is attempted.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Position:
    line: int  # 1-based
    column: int  # 0-based

    def to_dict(self) -> dict[str, int]:
        return {"line": self.line, "column": self.column}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Position:
        return cls(line=int(data["line"]), column=int(data["column"] or 0))


@dataclass(frozen=True, slots=True)
class Location:
    start: Position
    end: Position

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Location:
        return cls(start=Position.from_dict(data["start"]), end=Position.from_dict(data["end"]))

    @property
    def is_empty(self) -> bool:
        return self.start == self.end


@dataclass(frozen=True, slots=True)
class FunctionMapping:
    name: str
    decl: Location
    loc: Location
    line: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "decl": self.decl.to_dict(),
            "loc": self.loc.to_dict(),
            "line": self.line,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FunctionMapping:
        loc = Location.from_dict(data["loc"])
        return cls(
            name=str(data.get("name", "")),
            decl=Location.from_dict(data.get("decl", data["loc"])),
            loc=loc,
            line=int(data.get("line", loc.start.line)),
        )


@dataclass(frozen=True, slots=True)
class BranchMapping:
    type: str  # if, cond-expr, binary-expr, switch, default-arg
    loc: Location
    locations: tuple[Location, ...]
    line: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "loc": self.loc.to_dict(),
            "locations": [loc.to_dict() for loc in self.locations],
            "line": self.line,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BranchMapping:
        loc = Location.from_dict(data["loc"])
        return cls(
            type=str(data.get("type", "")),
            loc=loc,
            locations=tuple(Location.from_dict(x) for x in data.get("locations", [])),
            line=int(data.get("line", loc.start.line)),
        )


@dataclass(frozen=True, slots=True)
class CoverageTotals:
    """Totals for one metric."""

    total: int
    covered: int
    skipped: int = 0

    @property
    def pct(self) -> float:
        """Percentage rounded to three decimals; 100 when nothing is measurable."""
        if self.total == 0:
            return 100.0
        return math.floor(1000 * 100 * self.covered / self.total + 0.5) / 1000

    def __add__(self, other: CoverageTotals) -> CoverageTotals:
        return CoverageTotals(
            total=self.total + other.total,
            covered=self.covered + other.covered,
            skipped=self.skipped + other.skipped,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "covered": self.covered, "skipped": self.skipped, "pct": self.pct}


_ZERO = CoverageTotals(total=0, covered=0)

METRICS = ("statements", "branches", "functions", "lines")


@dataclass(frozen=True, slots=True)
class CoverageSummary:
    statements: CoverageTotals = _ZERO
    branches: CoverageTotals = _ZERO
    functions: CoverageTotals = _ZERO
    lines: CoverageTotals = _ZERO

    def __add__(self, other: CoverageSummary) -> CoverageSummary:
        return CoverageSummary(
            statements=self.statements + other.statements,
            branches=self.branches + other.branches,
            functions=self.functions + other.functions,
            lines=self.lines + other.lines,
        )

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name).to_dict() for name in METRICS}


@dataclass(slots=True)
class FileCoverage:
    """Istanbul coverage for one original source file."""

    path: str
    statement_map: dict[str, Location] = field(default_factory=dict)
    fn_map: dict[str, FunctionMapping] = field(default_factory=dict)
    branch_map: dict[str, BranchMapping] = field(default_factory=dict)
    s: dict[str, int] = field(default_factory=dict)
    f: dict[str, int] = field(default_factory=dict)
    b: dict[str, list[int]] = field(default_factory=dict)

    def same_structure(self, other: FileCoverage) -> bool:
        """True if both objects describe identical instrumentation."""
        return (
            self.statement_map == other.statement_map
            and self.fn_map == other.fn_map
            and self.branch_map == other.branch_map
        )

    def copy(self, path: str | None = None) -> FileCoverage:
        return FileCoverage(
            path=self.path if path is None else path,
            statement_map=dict(self.statement_map),
            fn_map=dict(self.fn_map),
            branch_map=dict(self.branch_map),
            s=dict(self.s),
            f=dict(self.f),
            b={k: list(v) for k, v in self.b.items()},
        )

    def merge(self, other: FileCoverage) -> FileCoverage:
        """Combine with a later fragment for the same path.

        Counters are summed when the maps match; otherwise ``other`` wins.
        """
        if not self.same_structure(other):
            return other.copy(path=self.path)
        merged = self.copy()
        for k, hits in other.s.items():
            merged.s[k] = merged.s.get(k, 0) + hits
        for k, hits in other.f.items():
            merged.f[k] = merged.f.get(k, 0) + hits
        for k, counts in other.b.items():
            mine = merged.b.get(k) or [0] * len(counts)
            merged.b[k] = [a + c for a, c in zip(mine, counts, strict=False)]
        return merged

    def line_coverage(self) -> dict[int, int]:
        """Line -> hits, taking the highest statement count starting on each line."""
        lines: dict[int, int] = {}
        for sid, loc in self.statement_map.items():
            hits = self.s.get(sid, 0)
            line = loc.start.line
            lines[line] = max(lines.get(line, 0), hits)
        return lines

    def uncovered_lines(self) -> list[int]:
        return sorted(line for line, hits in self.line_coverage().items() if hits == 0)

    def summary(self) -> CoverageSummary:
        statements = CoverageTotals(
            total=len(self.s), covered=sum(1 for hits in self.s.values() if hits > 0)
        )
        functions = CoverageTotals(
            total=len(self.f), covered=sum(1 for hits in self.f.values() if hits > 0)
        )
        branch_counts = [hits for counts in self.b.values() for hits in counts]
        branches = CoverageTotals(
            total=len(branch_counts), covered=sum(1 for hits in branch_counts if hits > 0)
        )
        line_hits = self.line_coverage()
        lines = CoverageTotals(
            total=len(line_hits), covered=sum(1 for hits in line_hits.values() if hits > 0)
        )
        return CoverageSummary(
            statements=statements, branches=branches, functions=functions, lines=lines
        )

    def zeroed(self) -> FileCoverage:
        """Copy with every counter reset to zero."""
        zero = self.copy()
        zero.s = dict.fromkeys(self.s, 0)
        zero.f = dict.fromkeys(self.f, 0)
        zero.b = {k: [0] * len(v) for k, v in self.b.items()}
        return zero

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "statementMap": {k: v.to_dict() for k, v in self.statement_map.items()},
            "fnMap": {k: v.to_dict() for k, v in self.fn_map.items()},
            "branchMap": {k: v.to_dict() for k, v in self.branch_map.items()},
            "s": dict(self.s),
            "f": dict(self.f),
            "b": {k: list(v) for k, v in self.b.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str | None = None) -> FileCoverage:
        return cls(
            path=path if path is not None else str(data["path"]),
            statement_map={
                k: Location.from_dict(v) for k, v in data.get("statementMap", {}).items()
            },
            fn_map={k: FunctionMapping.from_dict(v) for k, v in data.get("fnMap", {}).items()},
            branch_map={k: BranchMapping.from_dict(v) for k, v in data.get("branchMap", {}).items()},
            s={k: int(v) for k, v in data.get("s", {}).items()},
            f={k: int(v) for k, v in data.get("f", {}).items()},
            b={k: [int(x) for x in v] for k, v in data.get("b", {}).items()},
        )


@dataclass(slots=True)
class CoverageMap:
    """Path -> FileCoverage. Keys are unique; adding an existing path merges."""

    data: dict[str, FileCoverage] = field(default_factory=dict)

    def add_file_coverage(self, fc: FileCoverage) -> None:
        existing = self.data.get(fc.path)
        self.data[fc.path] = fc.copy() if existing is None else existing.merge(fc)

    def merge(self, other: CoverageMap) -> None:
        for fc in other.data.values():
            self.add_file_coverage(fc)

    def files(self) -> list[str]:
        return list(self.data)

    def file_coverage_for(self, path: str) -> FileCoverage:
        try:
            return self.data[path]
        except KeyError:
            raise KeyError(f"No file coverage available for: {path}") from None

    def filter(self, predicate: Callable[[str], bool]) -> None:
        """Drop every file for which ``predicate(path)`` is false."""
        for path in [p for p in self.data if not predicate(p)]:
            del self.data[path]

    def summary(self) -> CoverageSummary:
        total = CoverageSummary()
        for fc in self.data.values():
            total = total + fc.summary()
        return total

    def __contains__(self, path: object) -> bool:
        return path in self.data

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[FileCoverage]:
        return iter(self.data.values())

    def to_dict(self) -> dict[str, Any]:
        return {path: fc.to_dict() for path, fc in self.data.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoverageMap:
        cm = cls()
        for path, raw in data.items():
            cm.add_file_coverage(FileCoverage.from_dict(raw, path=raw.get("path", path)))
        return cm
