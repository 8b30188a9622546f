"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (NEXTCOV__SECTION__KEY)
3. YAML config file passed to load_config()
4. Built-in defaults (this file)

Environment Variable Format:
    NEXTCOV__<SECTION>__<KEY>=<VALUE>

Examples:
    NEXTCOV__LOGGING__LEVEL=DEBUG
    NEXTCOV__PROJECT__SOURCE_ROOT=app
    NEXTCOV__WORKERS__MAX_WORKERS=4

The worker pool also honours the plain NEXTCOV_WORKERS variable.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        NEXTCOV__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG lists every entry, bundle and timing.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ProjectConfig(BaseModel):
    """Project layout.

    Env vars:
        NEXTCOV__PROJECT__PROJECT_ROOT: Root that source paths resolve against
        NEXTCOV__PROJECT__SOURCE_ROOT: Source directory name (default: src)
        NEXTCOV__PROJECT__BUILD_DIR: Build output directory (default: .next)
    """

    project_root: str = Field(
        default=".",
        description="Project root. Source paths resolve against it and no loaded "
        "artifact may escape it.",
    )
    source_root: str = Field(
        default="src",
        description="Directory holding the project's own sources.",
    )
    build_dir: str = Field(
        default=".next",
        description="Build output directory holding bundles and their .map files.",
    )
    include: list[str] = Field(
        default_factory=lambda: [
            "src/**/*.ts",
            "src/**/*.tsx",
            "src/**/*.js",
            "src/**/*.jsx",
        ],
        description="Globs of source files reported even when never executed.",
    )
    exclude: list[str] = Field(
        default_factory=lambda: [
            "src/**/__tests__/**",
            "src/**/*.test.*",
            "src/**/*.spec.*",
            "src/**/*.d.ts",
        ],
        description="Globs removed from the include set and from converted bundles.",
    )

    @field_validator("source_root")
    @classmethod
    def strip_source_root(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("./"):
            v = v[2:]
        v = v.strip("/")
        if not v:
            raise ValueError("source_root must not be empty")
        return v


class ReaderConfig(BaseModel):
    """Raw coverage reader configuration.

    Env vars:
        NEXTCOV__READER__EXCLUDE_PATTERNS: JSON list of substrings
    """

    exclude_patterns: list[str] = Field(
        default_factory=list,
        description="Extra URL substrings to drop, in addition to the built-in exclusions.",
    )


class DevModeConfig(BaseModel):
    """Development-server source map extraction.

    Env vars:
        NEXTCOV__DEV_MODE__BASE_URL: Dev server base URL
        NEXTCOV__DEV_MODE__SOURCE_ROOT: Source directory used to spot project modules
    """

    base_url: str = Field(default="http://localhost:3000")
    source_root: str = Field(default="src")


class WorkersConfig(BaseModel):
    """Worker pool configuration.

    Env vars:
        NEXTCOV__WORKERS__MAX_WORKERS: Pool size (0 = in-process)
    """

    max_workers: int | None = Field(
        default=None,
        description="Worker processes for AST conversion. None = NEXTCOV_WORKERS or "
        "half the CPU count clamped to [2, 8]. 0 runs conversions in-process.",
    )

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError(f"max_workers must be >= 0, got {v}")
        return v


class Watermarks(BaseModel):
    """Low/high percentage thresholds per metric."""

    statements: tuple[float, float] = (50.0, 80.0)
    branches: tuple[float, float] = (50.0, 80.0)
    functions: tuple[float, float] = (50.0, 80.0)
    lines: tuple[float, float] = (50.0, 80.0)

    @model_validator(mode="after")
    def check_order(self) -> "Watermarks":
        for name in ("statements", "branches", "functions", "lines"):
            low, high = getattr(self, name)
            if not (0 <= low <= high <= 100):
                raise ValueError(f"{name} watermarks must satisfy 0 <= low <= high <= 100")
        return self


class ReportConfig(BaseModel):
    """Summary classification.

    Env vars:
        NEXTCOV__REPORT__WATERMARKS: JSON object of [low, high] pairs
    """

    watermarks: Watermarks = Field(default_factory=Watermarks)


class NextcovConfig(BaseModel):
    """Root configuration for nextcov."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    reader: ReaderConfig = Field(default_factory=ReaderConfig)
    dev_mode: DevModeConfig = Field(default_factory=DevModeConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
