"""Tests for source map sanitization and code windows."""

import pytest
from structlog.testing import capture_logs

from nextcov.coverage.models import SourceMapData
from nextcov.sourcemaps.codec import decode_mappings, encode_mappings
from nextcov.sourcemaps.paths import normalize_webpack_source_path
from nextcov.sourcemaps.sanitizer import (
    compute_src_code_ranges,
    get_source_rejection_reason,
    glob_to_regex,
    is_source_excluded,
    sanitize_source_map,
)

ROOT = "/proj"


def _reason(source: str | None, content: str | None = "code") -> str | None:
    return get_source_rejection_reason(source, content, ROOT, normalize_webpack_source_path)


class TestRejectionReason:
    @pytest.mark.parametrize(
        ("source", "reason"),
        [
            ("", "empty source"),
            ("   ", "empty source"),
            (None, "empty source"),
            ("external commonjs react", "webpack external"),
            ("webpack://_N_E/external%20commonjs%20%22react%22", "webpack external"),
            ("webpack://_N_E/", "normalized to empty path"),
            ("/elsewhere/src/a.ts", "absolute path outside project"),
            ("C:\\elsewhere\\src\\a.ts", "absolute path outside project"),
            ("webpack://_N_E/./node_modules/react/index.js", "node_modules"),
            ("webpack://_N_E/./lib/util.ts", "no src/ in path"),
        ],
    )
    def test_given_unusable_source_when_checked_then_reason_named(
        self, source: str | None, reason: str
    ) -> None:
        assert _reason(source) == reason

    def test_given_project_source_without_content_when_checked_then_rejected(self) -> None:
        assert _reason("webpack://_N_E/./src/a.ts", None) == "no sourcesContent"

    @pytest.mark.parametrize(
        "source",
        [
            "webpack://_N_E/./src/app/page.tsx",
            "/proj/src/a.ts",
            "App.tsx",
        ],
    )
    def test_given_project_source_when_checked_then_accepted(self, source: str) -> None:
        assert _reason(source) is None


class TestGlobs:
    @pytest.mark.parametrize(
        ("pattern", "path", "matches"),
        [
            ("**/*.test.ts", "src/a.test.ts", True),
            ("**/*.test.ts", "a.test.ts", True),
            ("**/*.test.ts", "src/deep/dir/a.test.ts", True),
            ("src/*.ts", "src/a.ts", True),
            ("src/*.ts", "src/x/a.ts", False),
            ("src/?.ts", "src/a.ts", True),
            ("src/?.ts", "src/ab.ts", False),
            ("src/**", "src/x/y/z.tsx", True),
            ("src/a.ts", "src/a_ts", False),
        ],
    )
    def test_given_glob_when_compiled_then_matches_paths(
        self, pattern: str, path: str, matches: bool
    ) -> None:
        assert bool(glob_to_regex(pattern).match(path)) is matches

    def test_given_backslash_path_when_excluded_then_normalized(self) -> None:
        assert is_source_excluded("src\\__tests__\\a.ts", ["**/__tests__/**"])

    def test_given_no_patterns_when_checked_then_not_excluded(self) -> None:
        assert not is_source_excluded("src/a.ts", [])


def _map(sources: list[str], segments: list[list[tuple]], content: bool = True) -> SourceMapData:
    return SourceMapData(
        sources=sources,
        sources_content=[f"// {s}" for s in sources] if content else None,
        mappings=encode_mappings(segments),
    )


class TestSanitizeSourceMap:
    def test_given_all_valid_when_sanitized_then_sources_normalized(self) -> None:
        # Given
        source_map = _map(
            ["webpack://_N_E/./src/a.ts", "webpack://_N_E/./src/b.ts"],
            [[(0, 0, 0, 0), (10, 1, 0, 0)]],
        )

        # When
        result = sanitize_source_map(source_map, ROOT, normalize_webpack_source_path)

        # Then
        assert result is not None
        assert result.sources == ["src/a.ts", "src/b.ts"]
        assert result.mappings == source_map.mappings

    def test_given_dependency_source_when_sanitized_then_segments_renumbered(self) -> None:
        # Given
        source_map = _map(
            [
                "webpack://_N_E/./src/a.ts",
                "webpack://_N_E/./node_modules/x/index.js",
                "webpack://_N_E/./src/b.ts",
            ],
            [[(0, 0, 0, 0), (10, 1, 3, 0), (20, 2, 1, 4)], [(5,), (7, 1, 0, 0)]],
        )

        # When
        result = sanitize_source_map(source_map, ROOT, normalize_webpack_source_path)

        # Then
        assert result is not None
        assert result.sources == ["src/a.ts", "src/b.ts"]
        assert result.sources_content == [
            "// webpack://_N_E/./src/a.ts",
            "// webpack://_N_E/./src/b.ts",
        ]
        assert decode_mappings(result.mappings) == [[(0, 0, 0, 0), (20, 1, 1, 4)], [(5,)]]

    def test_given_only_dependencies_when_sanitized_then_none(self) -> None:
        source_map = _map(["webpack://_N_E/./node_modules/x/index.js"], [[(0, 0, 0, 0)]])

        with capture_logs() as logs:
            result = sanitize_source_map(source_map, ROOT, normalize_webpack_source_path)

        assert result is None
        rejected = [e for e in logs if e["event"] == "source_map_rejected"]
        assert rejected[0]["reasons"] == {"node_modules": 1}

    def test_given_missing_content_when_sanitized_then_none(self) -> None:
        source_map = _map(["webpack://_N_E/./src/a.ts"], [[(0, 0, 0, 0)]], content=False)
        assert sanitize_source_map(source_map, ROOT, normalize_webpack_source_path) is None

    def test_given_no_sources_when_sanitized_then_none(self) -> None:
        source_map = SourceMapData(sources=[], mappings="")
        assert sanitize_source_map(source_map, ROOT, normalize_webpack_source_path) is None

    def test_given_every_source_excluded_when_sanitized_then_none(self) -> None:
        source_map = _map(["webpack://_N_E/./src/a.test.ts"], [[(0, 0, 0, 0)]])

        result = sanitize_source_map(
            source_map, ROOT, normalize_webpack_source_path, ["**/*.test.ts"]
        )

        assert result is None

    def test_given_some_sources_excluded_when_sanitized_then_map_kept(self) -> None:
        source_map = _map(
            ["webpack://_N_E/./src/a.test.ts", "webpack://_N_E/./src/a.ts"],
            [[(0, 0, 0, 0), (10, 1, 0, 0)]],
        )

        result = sanitize_source_map(
            source_map, ROOT, normalize_webpack_source_path, ["**/*.test.ts"]
        )

        assert result is not None
        assert result.sources == ["src/a.test.ts", "src/a.ts"]

    def test_given_bad_mappings_when_renumbering_then_none(self) -> None:
        source_map = SourceMapData(
            sources=["webpack://_N_E/./src/a.ts", "webpack://_N_E/./node_modules/x.js"],
            sources_content=["a", "x"],
            mappings="!!!",
        )
        assert sanitize_source_map(source_map, ROOT, normalize_webpack_source_path) is None


class TestComputeSrcCodeRanges:
    def test_given_distant_islands_when_computed_then_padded_windows(self) -> None:
        # Given
        code = "x" * 20_000
        source_map = _map(["src/a.ts"], [[(100, 0, 0, 0), (200, 0, 1, 0), (10_000, 0, 2, 0)]])

        # When
        ranges = compute_src_code_ranges(source_map, code)

        # Then
        assert ranges == [(0, 5_200), (9_000, 15_000)]

    def test_given_multiline_code_when_computed_then_offsets_use_line_starts(self) -> None:
        code = "ab\n" + "c" * 10
        source_map = _map(["src/a.ts"], [[], [(3, 0, 0, 0)]])

        assert compute_src_code_ranges(source_map, code) == [(0, 13)]

    def test_given_astral_characters_when_computed_then_offsets_in_utf16_units(self) -> None:
        # Given: ten surrogate pairs on the first line
        code = "\U0001f600" * 10 + "\n" + "c" * 20_000
        source_map = _map(["src/a.ts"], [[(0, 0, 0, 0)], [(19_000, 0, 1, 0)]])

        # When
        ranges = compute_src_code_ranges(source_map, code)

        # Then
        assert ranges == [(0, 5_000), (18_021, 20_021)]

    def test_given_only_generated_segments_when_computed_then_empty(self) -> None:
        source_map = _map(["src/a.ts"], [[(5,)]])
        assert compute_src_code_ranges(source_map, "x" * 10) == []

    def test_given_no_mappings_when_computed_then_empty(self) -> None:
        source_map = SourceMapData(sources=["src/a.ts"], mappings="")
        assert compute_src_code_ranges(source_map, "code") == []
