"""Production source and source map loading.

Maps script URLs onto build artifacts on disk and loads their source maps:
sibling ``.map`` file first, then an inline data URL, then a relative
``sourceMappingURL`` reference. Loaded artifacts are cached per URL.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import structlog

from nextcov.config.constants import SOURCE_CACHE_MAX_SIZE
from nextcov.core.cache import BoundedCache
from nextcov.core.errors import SourceMapError
from nextcov.coverage.models import SourceMapData, V8Coverage
from nextcov.sourcemaps.codec import DecodedMappings, decode_mappings, encode_mappings
from nextcov.sourcemaps.paths import (
    FILE_PROTOCOL,
    extract_next_path,
    normalize_webpack_source_path,
)

logger = structlog.get_logger()

SOURCE_MAPPING_URL_PATTERN = re.compile(r"//[#@]\s*sourceMappingURL=(.+)$", re.MULTILINE)
INLINE_SOURCE_MAP_BASE64_PATTERN = re.compile(
    r"sourceMappingURL=data:application/json[^,]*;base64,([A-Za-z0-9+/=]+)"
)
DATA_URL_BASE64_PATTERN = re.compile(r"^data:application/json[^,]*;base64,([A-Za-z0-9+/=]+)")
DATA_URL_PLAIN_PATTERN = re.compile(r"^data:application/json[^,;]*(?:;charset=[^,;]+)?,(.+)$")
_SRC_SEGMENT = re.compile(r"[/\\]src[/\\](.+)$")


@dataclass(slots=True)
class SourceFile:
    """A loaded build artifact."""

    path: str
    code: str
    source_map: SourceMapData | None = None


def is_path_within_base(path: Path | str, base: Path | str) -> bool:
    try:
        Path(path).resolve().relative_to(Path(base).resolve())
    except ValueError:
        return False
    return True


def decode_data_url(data_url: str) -> SourceMapData | None:
    """Decode a ``data:application/json`` URL (base64 or percent-encoded)."""
    data_url = data_url.strip()
    try:
        if match := DATA_URL_BASE64_PATTERN.match(data_url):
            raw = base64.b64decode(match.group(1)).decode("utf-8")
        elif match := DATA_URL_PLAIN_PATTERN.match(data_url):
            raw = unquote(match.group(1))
        else:
            return None
        return flatten_source_map(json.loads(raw))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, SourceMapError) as e:
        logger.debug("data_url_unreadable", error=str(e))
        return None


def flatten_source_map(raw: Any) -> SourceMapData:
    """Parse a source map, flattening an index (sectioned) map into one map.

    Each section's mappings are shifted by its generated offset; source and
    name indices are remapped onto the combined lists.

    Raises:
        SourceMapError: If the payload is not a source map.
    """
    sections = raw.get("sections") if isinstance(raw, dict) else None
    if not isinstance(sections, list):
        return SourceMapData.from_dict(raw)

    sources: list[str] = []
    contents: list[str | None] = []
    names: list[str] = []
    lines: DecodedMappings = []
    for section in sections:
        if not isinstance(section, dict) or not isinstance(section.get("map"), dict):
            continue
        sub = SourceMapData.from_dict(section["map"])
        offset = section.get("offset") or {}
        line_offset = int(offset.get("line", 0))
        column_offset = int(offset.get("column", 0))

        sub_contents = sub.sources_content or []
        source_ids = []
        for i, src in enumerate(sub.sources):
            if src not in sources:
                sources.append(src)
                contents.append(sub_contents[i] if i < len(sub_contents) else None)
            source_ids.append(sources.index(src))
        name_ids = []
        for name in sub.names:
            if name not in names:
                names.append(name)
            name_ids.append(names.index(name))

        for i, line in enumerate(decode_mappings(sub.mappings)):
            target = line_offset + i
            while len(lines) <= target:
                lines.append([])
            shift = column_offset if i == 0 else 0
            for seg in line:
                if len(seg) == 1 or seg[1] >= len(source_ids):
                    lines[target].append((seg[0] + shift,))
                    continue
                mapped = (seg[0] + shift, source_ids[seg[1]], seg[2], seg[3])
                if len(seg) == 5 and seg[4] < len(name_ids):
                    mapped = (*mapped, name_ids[seg[4]])
                lines[target].append(mapped)

    for line in lines:
        line.sort(key=lambda seg: seg[0])
    return SourceMapData(
        sources=sources,
        sources_content=contents,
        names=names,
        mappings=encode_mappings(lines),
        source_root=raw.get("sourceRoot"),
        file=raw.get("file"),
    )


class SourceMapLoader:
    """Loads bundles and their source maps from a build directory.

    Usage::

        loader = SourceMapLoader(project_root)
        source = loader.load_source("http://localhost:3000/_next/static/chunks/app.js")
        if source and source.source_map:
            ...
    """

    def __init__(
        self,
        project_root: Path | str,
        build_dir: Path | str | None = None,
        source_root: str = "src",
    ) -> None:
        self.project_root = Path(project_root).resolve()
        build = Path(build_dir) if build_dir is not None else Path(".next")
        self.build_dir = build if build.is_absolute() else self.project_root / build
        self.source_root = source_root
        self._cache: BoundedCache[str, SourceFile] = BoundedCache(SOURCE_CACHE_MAX_SIZE)

    def url_to_file_path(self, url: str) -> Path | None:
        """Map a script URL to a path inside the project.

        Returns None for unparseable URLs and for paths escaping the project
        root.
        """
        if url.startswith(FILE_PROTOCOL):
            path = Path(unquote(urlparse(url).path))
        elif (next_path := extract_next_path(urlparse(url).path)) is not None:
            path = self.build_dir / unquote(next_path).lstrip("/")
        elif url.startswith("/"):
            path = self.project_root / unquote(urlparse(url).path).lstrip("/")
        else:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.path:
                logger.debug("url_unmappable", url=url)
                return None
            path = self.project_root / unquote(parsed.path).lstrip("/")

        if not is_path_within_base(path, self.project_root):
            logger.warning("path_traversal_blocked", url=url)
            return None
        return path

    def _cache_key(self, url: str) -> tuple[str, Path | None]:
        path = self.url_to_file_path(url)
        return (str(path) if path is not None else url), path

    def load_source(self, url: str) -> SourceFile | None:
        """Load the artifact behind ``url`` with its source map, if any.

        Entries are cached by resolved file path, so different URLs for the
        same artifact share one read.
        """
        key, path = self._cache_key(url)
        cached = self._cache.get(key)
        if cached is not None and cached.code:
            return cached
        if path is None:
            return cached
        try:
            code = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("source_unreadable", url=url, error=str(e))
            return cached

        source_map = cached.source_map if cached is not None else None
        if source_map is None:
            source_map = self.load_source_map(path, code)
        source_file = SourceFile(path=str(path), code=code, source_map=source_map)
        self._cache.set(key, source_file)
        return source_file

    def load_source_map(self, js_path: Path | str, code: str | None = None) -> SourceMapData | None:
        js_path = Path(js_path)
        map_path = js_path.with_name(js_path.name + ".map")
        if map_path.is_file():
            source_map = self._read_map_file(map_path)
            if source_map is not None:
                return source_map

        if code is None:
            return None

        inline = self.extract_inline_source_map(code)
        if inline is not None:
            return inline

        matches = SOURCE_MAPPING_URL_PATTERN.findall(code)
        if not matches:
            return None
        map_url = matches[-1].strip()
        if map_url.startswith("data:"):
            return decode_data_url(map_url)
        referenced = (js_path.parent / unquote(map_url)).resolve()
        if not is_path_within_base(referenced, self.project_root):
            logger.warning("path_traversal_blocked", url=map_url)
            return None
        return self._read_map_file(referenced)

    def _read_map_file(self, path: Path) -> SourceMapData | None:
        try:
            return flatten_source_map(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, SourceMapError) as e:
            logger.warning("source_map_unreadable", path=str(path), error=str(e))
            return None

    def extract_inline_source_map(self, code: str) -> SourceMapData | None:
        """Decode the last inline ``sourceMappingURL`` data URL in ``code``."""
        for raw in reversed(SOURCE_MAPPING_URL_PATTERN.findall(code)):
            url = raw.strip()
            if url.startswith("data:"):
                return decode_data_url(url)
        match = INLINE_SOURCE_MAP_BASE64_PATTERN.search(code)
        if match:
            return decode_data_url(f"data:application/json;base64,{match.group(1)}")
        return None

    def load_from_v8_cache(self, coverage: V8Coverage) -> None:
        """Prime the cache with maps from Node's ``source-map-cache``."""
        if not coverage.source_map_cache:
            return
        for url, entry in coverage.source_map_cache.items():
            if entry.data is None:
                continue
            key, path = self._cache_key(url)
            existing = self._cache.get(key)
            if existing is not None:
                existing.source_map = entry.data
                continue
            self._cache.set(
                key, SourceFile(path=str(path) if path else url, code="", source_map=entry.data)
            )

    def cached_source_map(self, url: str) -> SourceMapData | None:
        cached = self._cache.get(self._cache_key(url)[0])
        return cached.source_map if cached is not None else None

    def resolve_original_path(self, source_map: SourceMapData, index: int) -> str | None:
        if index < 0 or index >= len(source_map.sources):
            return None
        source = source_map.sources[index]
        if source_map.source_root:
            source = f"{source_map.source_root.rstrip('/')}/{source}"
        return self.normalize_source_path(source)

    def normalize_source_path(self, source_path: str) -> str:
        """Webpack normalization, then collapse any ``.../src/x`` to ``src/x``."""
        normalized = normalize_webpack_source_path(source_path)
        match = _SRC_SEGMENT.search(normalized)
        if match:
            return "src/" + match.group(1).replace("\\", "/")
        return normalized

    def clear_cache(self) -> None:
        self._cache.clear()
