"""Source map loading, decoding and dev-mode extraction."""

from nextcov.sourcemaps.consumer import OriginalPosition, SourceMapConsumer
from nextcov.sourcemaps.dev_mode import DevModeSourceMapExtractor, ExtractedSourceMap
from nextcov.sourcemaps.loader import SourceFile, SourceMapLoader
from nextcov.sourcemaps.sanitizer import compute_src_code_ranges, sanitize_source_map

__all__ = [
    "SourceMapLoader",
    "SourceFile",
    "DevModeSourceMapExtractor",
    "ExtractedSourceMap",
    "SourceMapConsumer",
    "OriginalPosition",
    "sanitize_source_map",
    "compute_src_code_ranges",
]
