"""nextcov error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Coverage data
- 4xxx: Source maps
- 5xxx: Worker pool
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_FILE_NOT_FOUND = 2004

    # Coverage data (3xxx)
    COVERAGE_INVALID_SNAPSHOT = 3001

    # Source maps (4xxx)
    SOURCE_MAP_INVALID_PAYLOAD = 4001
    SOURCE_MAP_DECODE_FAILED = 4002

    # Worker pool (5xxx)
    WORKER_POOL_TERMINATED = 5001
    WORKER_CRASHED = 5002
    WORKER_FAILED = 5003
    WORKER_POOL_NOT_INITIALIZED = 5004

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


@dataclass(frozen=True, slots=True)
class NextcovError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'WORKER_CRASHED')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(NextcovError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def file_not_found(cls, path: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_FILE_NOT_FOUND,
            message=f"Config file not found: {path}",
            details={"path": path},
        )


class CoverageDataError(NextcovError):
    """Raw V8 coverage payloads that cannot be interpreted."""

    @classmethod
    def invalid_snapshot(cls, source: str, reason: str) -> "CoverageDataError":
        return cls(
            code=ErrorCode.COVERAGE_INVALID_SNAPSHOT,
            message=f"Invalid coverage snapshot {source}: {reason}",
            details={"source": source, "reason": reason},
        )


class SourceMapError(NextcovError):
    """Source map payloads that cannot be decoded."""

    @classmethod
    def invalid_payload(cls, reason: str) -> "SourceMapError":
        return cls(
            code=ErrorCode.SOURCE_MAP_INVALID_PAYLOAD,
            message=f"Invalid source map: {reason}",
            details={"reason": reason},
        )

    @classmethod
    def decode_failed(cls, mappings_excerpt: str, reason: str) -> "SourceMapError":
        return cls(
            code=ErrorCode.SOURCE_MAP_DECODE_FAILED,
            message=f"Failed to decode mappings: {reason}",
            details={"mappings": mappings_excerpt[:40], "reason": reason},
        )


class WorkerPoolError(NextcovError):
    """Worker pool lifecycle and worker failures."""

    @classmethod
    def terminated(cls) -> "WorkerPoolError":
        return cls(
            code=ErrorCode.WORKER_POOL_TERMINATED,
            message="WorkerPool has been terminated",
        )

    @classmethod
    def worker_crashed(cls, pid: int | None, exitcode: int | None) -> "WorkerPoolError":
        return cls(
            code=ErrorCode.WORKER_CRASHED,
            message=f"Worker {pid} exited before reporting a result (exit code {exitcode})",
            retryable=True,
            details={"pid": pid, "exitcode": exitcode},
        )

    @classmethod
    def worker_failed(cls, pid: int | None, reason: str) -> "WorkerPoolError":
        return cls(
            code=ErrorCode.WORKER_FAILED,
            message=f"Worker {pid} failed: {reason}",
            retryable=True,
            details={"pid": pid, "reason": reason},
        )

    @classmethod
    def not_initialized(cls) -> "WorkerPoolError":
        return cls(
            code=ErrorCode.WORKER_POOL_NOT_INITIALIZED,
            message="No worker pool; call init_worker_pool() first",
        )


class InternalError(NextcovError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
