"""Tests for production source and source map loading."""

import base64
import json
from pathlib import Path
from urllib.parse import quote

import pytest
from structlog.testing import capture_logs

from nextcov.coverage.models import CachedSourceMapEntry, SourceMapData, V8Coverage
from nextcov.sourcemaps.codec import decode_mappings
from nextcov.sourcemaps.loader import (
    SourceMapLoader,
    decode_data_url,
    flatten_source_map,
    is_path_within_base,
)

MAP = {
    "version": 3,
    "sources": ["webpack://_N_E/./src/app/page.tsx"],
    "sourcesContent": ["export default function Page() {}"],
    "names": [],
    "mappings": "AAAA",
}


def _inline(data: dict) -> str:
    encoded = base64.b64encode(json.dumps(data).encode()).decode()
    return f"//# sourceMappingURL=data:application/json;charset=utf-8;base64,{encoded}"


@pytest.fixture
def project(tmp_path: Path) -> Path:
    chunks = tmp_path / ".next" / "static" / "chunks"
    chunks.mkdir(parents=True)
    (chunks / "page.js").write_text("console.log(1)\n//# sourceMappingURL=page.js.map\n")
    (chunks / "page.js.map").write_text(json.dumps(MAP))
    (chunks / "inline.js").write_text("console.log(2)\n" + _inline(MAP) + "\n")
    (chunks / "nomap.js").write_text("console.log(3)\n")
    maps = tmp_path / ".next" / "maps"
    maps.mkdir()
    (chunks / "ref.js").write_text("x()\n//# sourceMappingURL=../../maps/ref.map\n")
    (maps / "ref.map").write_text(json.dumps(MAP))
    return tmp_path


class TestUrlToFilePath:
    def test_given_next_url_when_mapped_then_inside_build_dir(self, project: Path) -> None:
        loader = SourceMapLoader(project)
        path = loader.url_to_file_path("http://localhost:3000/_next/static/chunks/page.js")
        assert path == project.resolve() / ".next" / "static" / "chunks" / "page.js"

    def test_given_file_url_when_mapped_then_decoded(self, project: Path) -> None:
        target = project.resolve() / "server dir" / "a.js"
        url = "file://" + quote(str(target))
        assert SourceMapLoader(project).url_to_file_path(url) == target

    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost:3000/_next/../../../../etc/passwd",
            "file:///etc/passwd",
            "/../../outside.js",
        ],
    )
    def test_given_escaping_url_when_mapped_then_blocked_with_warning(
        self, project: Path, url: str
    ) -> None:
        with capture_logs() as logs:
            assert SourceMapLoader(project).url_to_file_path(url) is None
        assert any(log["event"] == "path_traversal_blocked" for log in logs)

    def test_given_unsupported_scheme_when_mapped_then_none(self, project: Path) -> None:
        assert SourceMapLoader(project).url_to_file_path("chrome-extension://x/a.js") is None


class TestLoadSource:
    """Sibling map, inline map and relative reference lookup."""

    def test_given_sibling_map_when_loaded_then_attached(self, project: Path) -> None:
        source = SourceMapLoader(project).load_source(
            "http://localhost:3000/_next/static/chunks/page.js"
        )
        assert source is not None
        assert source.code.startswith("console.log(1)")
        assert source.source_map is not None
        assert source.source_map.sources == MAP["sources"]

    def test_given_inline_map_when_loaded_then_decoded(self, project: Path) -> None:
        source = SourceMapLoader(project).load_source("/_next/static/chunks/inline.js")
        assert source is not None and source.source_map is not None
        assert source.source_map.sources_content == MAP["sourcesContent"]

    def test_given_relative_reference_when_loaded_then_followed(self, project: Path) -> None:
        source = SourceMapLoader(project).load_source("/_next/static/chunks/ref.js")
        assert source is not None and source.source_map is not None

    def test_given_no_map_when_loaded_then_code_only(self, project: Path) -> None:
        source = SourceMapLoader(project).load_source("/_next/static/chunks/nomap.js")
        assert source is not None
        assert source.source_map is None

    def test_given_missing_file_when_loaded_then_none(self, project: Path) -> None:
        assert SourceMapLoader(project).load_source("/_next/static/chunks/gone.js") is None

    def test_given_loaded_source_when_file_removed_then_served_from_cache(
        self, project: Path
    ) -> None:
        # Given
        loader = SourceMapLoader(project)
        url = "/_next/static/chunks/page.js"
        loader.load_source(url)

        # When
        (project / ".next" / "static" / "chunks" / "page.js").unlink()

        # Then
        assert loader.load_source(url) is not None
        loader.clear_cache()
        assert loader.load_source(url) is None

    def test_given_urls_for_same_file_when_loaded_then_read_once(self, project: Path) -> None:
        # Given
        loader = SourceMapLoader(project)
        first = loader.load_source("http://localhost:3000/_next/static/chunks/page.js")
        (project / ".next" / "static" / "chunks" / "page.js").unlink()

        # When
        second = loader.load_source("/_next/static/chunks/page.js?v=2")

        # Then
        assert second is first

    def test_given_corrupt_map_when_loaded_then_warned_and_skipped(self, project: Path) -> None:
        (project / ".next" / "static" / "chunks" / "page.js.map").write_text("{broken")
        with capture_logs() as logs:
            source = SourceMapLoader(project).load_source("/_next/static/chunks/page.js")
        assert source is not None and source.source_map is None
        assert any(log["event"] == "source_map_unreadable" for log in logs)


class TestV8Cache:
    def test_given_source_map_cache_when_primed_then_map_available(self, project: Path) -> None:
        # Given
        loader = SourceMapLoader(project)
        url = f"file://{project.resolve()}/.next/server/app/page.js"
        coverage = V8Coverage(
            source_map_cache={url: CachedSourceMapEntry(data=SourceMapData.from_dict(MAP))}
        )

        # When
        loader.load_from_v8_cache(coverage)

        # Then
        cached = loader.cached_source_map(url)
        assert cached is not None
        assert cached.sources == MAP["sources"]


class TestNormalization:
    @pytest.mark.parametrize(
        ("source", "expected"),
        [
            ("webpack://_N_E/./src/app/page.tsx", "src/app/page.tsx"),
            ("/home/me/app/src/lib/a.ts", "src/lib/a.ts"),
            ("C:\\app\\src\\lib\\a.ts", "src/lib/a.ts"),
            ("lib/a.ts", "lib/a.ts"),
        ],
    )
    def test_given_source_when_normalized_then_src_relative(
        self, tmp_path: Path, source: str, expected: str
    ) -> None:
        assert SourceMapLoader(tmp_path).normalize_source_path(source) == expected

    def test_given_source_root_when_resolved_then_joined(self, tmp_path: Path) -> None:
        sm = SourceMapData(sources=["app/page.tsx"], mappings="", source_root="/repo/src")
        loader = SourceMapLoader(tmp_path)
        assert loader.resolve_original_path(sm, 0) == "src/app/page.tsx"
        assert loader.resolve_original_path(sm, 3) is None


class TestDataUrls:
    def test_given_percent_encoded_url_when_decoded_then_parsed(self) -> None:
        url = "data:application/json;charset=utf-8," + quote(json.dumps(MAP))
        decoded = decode_data_url(url)
        assert decoded is not None
        assert decoded.mappings == "AAAA"

    def test_given_garbage_when_decoded_then_none(self) -> None:
        assert decode_data_url("data:application/json;base64,!!!!") is None
        assert decode_data_url("data:text/plain,hello") is None

    def test_given_sectioned_map_when_flattened_then_offsets_applied(self) -> None:
        # Given
        raw = {
            "version": 3,
            "sections": [
                {
                    "offset": {"line": 0, "column": 0},
                    "map": {"version": 3, "sources": ["a.ts"], "names": [], "mappings": "AAAA"},
                },
                {
                    "offset": {"line": 2, "column": 10},
                    "map": {"version": 3, "sources": ["b.ts"], "names": [], "mappings": "AAAA"},
                },
            ],
        }

        # When
        flat = flatten_source_map(raw)

        # Then
        assert flat.sources == ["a.ts", "b.ts"]
        assert decode_mappings(flat.mappings) == [[(0, 0, 0, 0)], [], [(10, 1, 0, 0)]]

    def test_given_paths_when_checked_then_containment(self, tmp_path: Path) -> None:
        assert is_path_within_base(tmp_path / "a" / "b.js", tmp_path)
        assert not is_path_within_base(tmp_path / ".." / "x.js", tmp_path)
