"""Core module exports."""

from nextcov.core.cache import BoundedCache
from nextcov.core.errors import (
    ConfigError,
    CoverageDataError,
    ErrorCode,
    InternalError,
    NextcovError,
    SourceMapError,
    WorkerPoolError,
)
from nextcov.core.logging import (
    clear_run_id,
    configure_logging,
    get_logger,
    get_run_id,
    set_run_id,
    timed,
)

__all__ = [
    # Errors
    "NextcovError",
    "ErrorCode",
    "ConfigError",
    "CoverageDataError",
    "SourceMapError",
    "WorkerPoolError",
    "InternalError",
    # Logging
    "clear_run_id",
    "configure_logging",
    "get_logger",
    "get_run_id",
    "set_run_id",
    "timed",
    # Caches
    "BoundedCache",
]
