"""Config module exports."""

from nextcov.config.loader import load_config
from nextcov.config.models import (
    DevModeConfig,
    LoggingConfig,
    NextcovConfig,
    ProjectConfig,
    ReaderConfig,
    ReportConfig,
    Watermarks,
    WorkersConfig,
)

__all__ = [
    "load_config",
    "NextcovConfig",
    "ProjectConfig",
    "ReaderConfig",
    "DevModeConfig",
    "WorkersConfig",
    "ReportConfig",
    "Watermarks",
    "LoggingConfig",
]
