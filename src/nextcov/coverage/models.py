"""Raw V8 coverage and source map data model.

These mirror the JSON shapes emitted by V8's precise coverage (via the
DevTools protocol or browser automation) and by bundlers (source map v3).
Field names are snake_case in Python; ``from_dict`` / ``to_dict`` translate
to and from the camelCase wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from nextcov.core.errors import CoverageDataError, SourceMapError


@dataclass(slots=True)
class V8Range:
    """Byte-offset range with an execution count.

    Ranges of one function nest; the innermost range containing an offset
    carries the effective count for that offset.
    """

    start_offset: int
    end_offset: int
    count: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> V8Range:
        return cls(
            start_offset=int(data["startOffset"]),
            end_offset=int(data["endOffset"]),
            count=int(data["count"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"startOffset": self.start_offset, "endOffset": self.end_offset, "count": self.count}


@dataclass(slots=True)
class V8Function:
    """Per-function block coverage."""

    function_name: str
    ranges: list[V8Range] = field(default_factory=list)
    is_block_coverage: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> V8Function:
        return cls(
            function_name=str(data.get("functionName", "")),
            ranges=[V8Range.from_dict(r) for r in data.get("ranges", [])],
            is_block_coverage=bool(data.get("isBlockCoverage", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "functionName": self.function_name,
            "isBlockCoverage": self.is_block_coverage,
            "ranges": [r.to_dict() for r in self.ranges],
        }


@dataclass(slots=True)
class V8ScriptCoverage:
    """Coverage for one script, as captured."""

    script_id: str
    url: str
    functions: list[V8Function] = field(default_factory=list)
    source: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> V8ScriptCoverage:
        return cls(
            script_id=str(data.get("scriptId", "")),
            url=str(data.get("url", "")),
            functions=[V8Function.from_dict(f) for f in data.get("functions", [])],
            source=data.get("source"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "scriptId": self.script_id,
            "url": self.url,
            "functions": [f.to_dict() for f in self.functions],
        }
        if self.source is not None:
            out["source"] = self.source
        return out


@dataclass(slots=True)
class SourceMapData:
    """Source map v3 payload."""

    sources: list[str]
    mappings: str
    version: int = 3
    sources_content: list[str | None] | None = None
    names: list[str] = field(default_factory=list)
    file: str | None = None
    source_root: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> SourceMapData:
        """Build from parsed JSON.

        Raises:
            SourceMapError: If the payload is not a usable source map.
        """
        if not isinstance(data, dict):
            raise SourceMapError.invalid_payload("expected a JSON object")
        sources = data.get("sources")
        mappings = data.get("mappings")
        if not isinstance(sources, list) or not isinstance(mappings, str):
            raise SourceMapError.invalid_payload("missing 'sources' or 'mappings'")
        content = data.get("sourcesContent")
        return cls(
            sources=[str(s) if s is not None else "" for s in sources],
            mappings=mappings,
            version=int(data.get("version", 3)),
            sources_content=list(content) if isinstance(content, list) else None,
            names=list(data.get("names") or []),
            file=data.get("file"),
            source_root=data.get("sourceRoot"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "sources": list(self.sources),
            "names": list(self.names),
            "mappings": self.mappings,
        }
        if self.sources_content is not None:
            out["sourcesContent"] = list(self.sources_content)
        if self.file is not None:
            out["file"] = self.file
        if self.source_root is not None:
            out["sourceRoot"] = self.source_root
        return out


@dataclass(slots=True)
class CachedSourceMapEntry:
    """Node's ``source-map-cache`` entry (written with NODE_V8_COVERAGE)."""

    line_lengths: list[int] = field(default_factory=list)
    data: SourceMapData | None = None
    url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedSourceMapEntry:
        raw_map = data.get("data")
        source_map = None
        if raw_map is not None:
            try:
                source_map = SourceMapData.from_dict(raw_map)
            except SourceMapError:
                source_map = None
        return cls(
            line_lengths=[int(n) for n in data.get("lineLengths") or []],
            data=source_map,
            url=data.get("url"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"lineLengths": list(self.line_lengths)}
        out["data"] = self.data.to_dict() if self.data is not None else None
        if self.url is not None:
            out["url"] = self.url
        return out


@dataclass(slots=True)
class V8Coverage:
    """A capture snapshot: script coverages plus Node's optional source map cache."""

    result: list[V8ScriptCoverage] = field(default_factory=list)
    source_map_cache: dict[str, CachedSourceMapEntry] | None = None

    @classmethod
    def from_dict(cls, data: Any, source: str = "<memory>") -> V8Coverage:
        """Build from a parsed snapshot.

        Raises:
            CoverageDataError: If the payload has no ``result`` list.
        """
        if not isinstance(data, dict) or not isinstance(data.get("result"), list):
            raise CoverageDataError.invalid_snapshot(source, "missing 'result' list")
        try:
            result = [V8ScriptCoverage.from_dict(e) for e in data["result"]]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CoverageDataError.invalid_snapshot(source, str(e)) from e
        cache_raw = data.get("source-map-cache")
        cache = None
        if isinstance(cache_raw, dict) and cache_raw:
            cache = {
                key: CachedSourceMapEntry.from_dict(value)
                for key, value in cache_raw.items()
                if isinstance(value, dict)
            }
        return cls(result=result, source_map_cache=cache)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"result": [e.to_dict() for e in self.result]}
        if self.source_map_cache:
            out["source-map-cache"] = {k: v.to_dict() for k, v in self.source_map_cache.items()}
        return out
