"""Configuration constants.

This module contains truly constant values that should NOT be user-configurable.
These are bundler conventions, cache bounds, and performance thresholds.

For configurable values, see models.py.
"""

# =============================================================================
# Bounded caches
# =============================================================================

CACHE_EVICTION_FRACTION = 0.2
"""Fraction of the oldest entries dropped when a bounded cache is full."""

SOURCE_MAP_CACHE_MAX_SIZE = 1_000
"""Maximum extracted dev-mode source maps kept per extractor."""

SOURCE_CACHE_MAX_SIZE = 500
"""Maximum loaded build artifacts (code + map) kept per loader."""

FILE_EXISTS_CACHE_MAX_SIZE = 10_000
"""Maximum cached file-existence checks during path normalization."""

# =============================================================================
# Source map extraction
# =============================================================================

SOURCE_MAP_LOOKBACK_LIMIT = 10_000
"""Maximum characters scanned backward for an eval() wrapper."""

SOURCE_MAP_RANGE_THRESHOLD = 100_000
"""Bundles larger than this (chars) get a restricting byte window."""

SOURCE_MAP_PADDING_BEFORE = 1_000
"""Padding added before each mapped code island."""

SOURCE_MAP_PADDING_AFTER = 5_000
"""Padding added after each mapped code island."""

SOURCE_MAP_GAP_THRESHOLD = 1_000
"""Mapped offsets further apart than this start a new code island."""

# =============================================================================
# Conversion
# =============================================================================

LARGE_BUNDLE_THRESHOLD = 300_000
"""Server bundles above this size are skipped when mostly redundant."""

REDUNDANT_SOURCE_RATIO = 0.8
"""Share of sources provided elsewhere that makes a large bundle skippable."""

HEAVY_ENTRY_THRESHOLD = 100_000
"""Entries above this size are logged as heavy."""

SLOW_ENTRY_MS = 100.0
"""Conversions slower than this are logged with their timings."""

# =============================================================================
# Worker pool
# =============================================================================

WORKERS_ENV_VAR = "NEXTCOV_WORKERS"
"""Environment override for the worker pool size (0 = single-threaded)."""

MIN_AUTO_WORKERS = 2
MAX_AUTO_WORKERS = 8

# =============================================================================
# Snapshots
# =============================================================================

SNAPSHOT_PREFIX = "coverage-"
SNAPSHOT_SUFFIX = ".json"
