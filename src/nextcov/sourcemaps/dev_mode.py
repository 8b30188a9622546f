"""Dev-mode source map extraction.

In development builds webpack wraps every module in ``eval()`` and embeds its
source map as a base64 data URL::

    eval(__webpack_require__.ts("...code...//# sourceMappingURL=data:application/json;charset=utf-8;base64,<map>"))

The extractor decodes those maps from bundle chunks (fetched from the dev
server) or from single script sources (obtained over the debugging protocol),
and keeps the results in a bounded cache keyed by original path. Module code is
recovered from the closest wrapper preceding each map.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from urllib.parse import unquote

import httpx
import structlog

from nextcov.config.constants import SOURCE_MAP_CACHE_MAX_SIZE, SOURCE_MAP_LOOKBACK_LIMIT
from nextcov.config.models import DevModeConfig
from nextcov.core.cache import BoundedCache
from nextcov.core.errors import SourceMapError
from nextcov.coverage.models import SourceMapData
from nextcov.sourcemaps.paths import (
    COMMON_DEV_CHUNKS,
    NEXTJS_CHUNK_PATTERN,
    WEBPACK_INTERNAL_MODULE_PATTERN,
    contains_source_root,
    is_webpack_url,
    normalize_webpack_source_path,
)

logger = structlog.get_logger()

INLINE_SOURCE_MAP_PATTERN_GLOBAL = re.compile(
    r"sourceMappingURL=data:application/json;charset=utf-8;base64,([A-Za-z0-9+/=]+)"
)
INLINE_SOURCE_MAP_PATTERN = re.compile(
    r"sourceMappingURL=data:application/json[^,]*,([A-Za-z0-9+/=]+)"
)
EVAL_WRAPPER_PREFIX = 'eval(__webpack_require__.ts("'

_UNESCAPES = (("\\n", "\n"), ('\\"', '"'), ("\\t", "\t"))


@dataclass(frozen=True, slots=True)
class ExtractedSourceMap:
    module_id: str  # e.g. "(app-pages-browser)/./src/components/Button.tsx"
    code: str
    source_map: SourceMapData
    original_path: str


def _decode_payload(encoded: str) -> SourceMapData:
    raw = base64.b64decode(encoded).decode("utf-8")
    return SourceMapData.from_dict(json.loads(raw))


def _original_path(source_map: SourceMapData) -> str | None:
    if not source_map.sources:
        return None
    return normalize_webpack_source_path(source_map.sources[0]) or None


class DevModeSourceMapExtractor:
    """Extracts inline source maps from eval-wrapped dev bundles."""

    def __init__(self, config: DevModeConfig | None = None) -> None:
        self.config = config or DevModeConfig()
        self.source_root = self.config.source_root.removeprefix("./").strip("/")
        self._cache: BoundedCache[str, ExtractedSourceMap] = BoundedCache(
            SOURCE_MAP_CACHE_MAX_SIZE
        )

    def extract_from_chunk_content(self, chunk: str) -> list[ExtractedSourceMap]:
        """Decode every inline map in a bundle chunk.

        Entries whose first source does not normalize to a path are dropped;
        undecodable payloads are skipped with a debug log.
        """
        results = []
        for match in INLINE_SOURCE_MAP_PATTERN_GLOBAL.finditer(chunk):
            try:
                source_map = _decode_payload(match.group(1))
            except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, SourceMapError) as e:
                logger.debug("inline_source_map_invalid", error=str(e))
                continue
            original_path = _original_path(source_map)
            if not original_path:
                continue
            extracted = ExtractedSourceMap(
                module_id=source_map.file or "unknown",
                code=self._code_before(chunk, match.start()),
                source_map=source_map,
                original_path=original_path,
            )
            self._cache.set(original_path, extracted)
            results.append(extracted)
        return results

    def _code_before(self, content: str, index: int) -> str:
        """Module code from the ``eval(__webpack_require__.ts("`` wrapper preceding ``index``."""
        section = content[max(0, index - SOURCE_MAP_LOOKBACK_LIMIT) : index]
        start = section.rfind(EVAL_WRAPPER_PREFIX)
        if start == -1:
            return ""
        code = section[start + len(EVAL_WRAPPER_PREFIX) :]
        for escaped, plain in _UNESCAPES:
            code = code.replace(escaped, plain)
        return code

    def extract_from_script_source(self, url: str, source: str) -> ExtractedSourceMap | None:
        """Decode the inline map of one script's full text."""
        match = INLINE_SOURCE_MAP_PATTERN.search(source)
        if not match:
            return None
        try:
            source_map = _decode_payload(match.group(1))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, SourceMapError) as e:
            logger.debug("script_source_map_invalid", url=url, error=str(e))
            return None
        original_path = _original_path(source_map)
        if not original_path:
            return None

        module_match = WEBPACK_INTERNAL_MODULE_PATTERN.search(url)
        extracted = ExtractedSourceMap(
            module_id=module_match.group(1) if module_match else url,
            code=source[: match.start()],
            source_map=source_map,
            original_path=original_path,
        )
        self._cache.set(original_path, extracted)
        return extracted

    def is_project_script(self, url: str) -> bool:
        return is_webpack_url(url) and contains_source_root(unquote(url), self.source_root)

    def filter_project_source_maps(
        self, source_maps: list[ExtractedSourceMap]
    ) -> list[ExtractedSourceMap]:
        """Keep project modules: no node_modules, and under the source root."""
        root = self.source_root
        kept = []
        for sm in source_maps:
            if "node_modules" in sm.module_id or "node_modules" in sm.original_path:
                continue
            if (
                contains_source_root(sm.module_id, root)
                or contains_source_root(sm.original_path, root)
                or sm.original_path.startswith(f"{root}/")
            ):
                kept.append(sm)
        return kept

    def extract_from_client_chunk(
        self, chunk_url: str, client: httpx.Client | None = None
    ) -> list[ExtractedSourceMap]:
        try:
            if client is None:
                response = httpx.get(chunk_url, timeout=10.0)
            else:
                response = client.get(chunk_url)
        except httpx.RequestError as e:
            logger.debug("chunk_fetch_failed", url=chunk_url, error=str(e))
            return []
        if response.status_code != 200:
            return []
        return self.extract_from_chunk_content(response.text)

    def extract_all_client_source_maps(
        self, client: httpx.Client | None = None
    ) -> list[ExtractedSourceMap]:
        """Discover chunks referenced by the dev server's index page and extract them."""
        base_url = self.config.base_url.rstrip("/")
        try:
            page = httpx.get(base_url, timeout=10.0) if client is None else client.get(base_url)
        except httpx.RequestError as e:
            logger.warning("dev_server_unavailable", base_url=base_url, error=str(e))
            return []

        chunks = dict.fromkeys(NEXTJS_CHUNK_PATTERN.findall(page.text))
        chunks.update(dict.fromkeys(COMMON_DEV_CHUNKS))
        extracted = []
        for chunk in chunks:
            extracted.extend(self.extract_from_client_chunk(f"{base_url}/{chunk}", client))
        return self.filter_project_source_maps(extracted)

    def get_source_map(self, original_path: str) -> ExtractedSourceMap | None:
        return self._cache.get(original_path)

    def clear_cache(self) -> None:
        self._cache.clear()

    def to_standard_source_map(self, extracted: ExtractedSourceMap) -> SourceMapData:
        sm = extracted.source_map
        return SourceMapData(
            sources=[normalize_webpack_source_path(s) for s in sm.sources],
            mappings=sm.mappings,
            version=sm.version,
            sources_content=list(sm.sources_content or []),
            names=list(sm.names),
            file=extracted.original_path,
            source_root=sm.source_root,
        )

    def __len__(self) -> int:
        return len(self._cache)
