"""Configuration loading.

Sources, highest precedence first:

1. keyword arguments to ``load_config``
2. ``NEXTCOV__<SECTION>__<KEY>`` environment variables
3. an optional YAML file with the same sections as ``NextcovConfig``
4. model defaults
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from nextcov.config.models import (
    DevModeConfig,
    LoggingConfig,
    NextcovConfig,
    ProjectConfig,
    ReaderConfig,
    ReportConfig,
    WorkersConfig,
)
from nextcov.core.errors import ConfigError


def read_yaml_config(path: Path | str) -> dict[str, Any]:
    """Parse a YAML config file into its top-level sections.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or its top
            level is not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError.file_not_found(str(path))
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping of sections")
    return data


class _YamlSettingsSource(PydanticBaseSettingsSource):
    """Serves sections from an already parsed YAML document."""

    def __init__(self, settings_cls: type[BaseSettings], sections: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._sections = sections

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:  # noqa: ARG002
        value = self._sections.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return {k: v for k, v in self._sections.items() if k in self.settings_cls.model_fields}


def _settings_for(sections: dict[str, Any]) -> type[BaseSettings]:
    """A settings class bound to one YAML document, so loads never share state."""

    class NextcovSettings(BaseSettings):
        model_config = SettingsConfigDict(
            env_prefix="NEXTCOV__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        project: ProjectConfig = ProjectConfig()
        reader: ReaderConfig = ReaderConfig()
        dev_mode: DevModeConfig = DevModeConfig()
        workers: WorkersConfig = WorkersConfig()
        report: ReportConfig = ReportConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            return (init_settings, env_settings, _YamlSettingsSource(settings_cls, sections))

    return NextcovSettings


def _as_config_error(error: ValidationError) -> ConfigError:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return ConfigError.invalid_value(field, first.get("input"), first["msg"])


def load_config(config_path: Path | str | None = None, **kwargs: Any) -> NextcovConfig:
    """Resolve the run configuration.

    Args:
        config_path: Optional YAML file.
        **kwargs: Section overrides, e.g. ``workers={"max_workers": 0}``.

    Raises:
        ConfigError: On a missing or malformed file, or a value that fails
            validation.
    """
    sections = read_yaml_config(config_path) if config_path is not None else {}
    try:
        settings = _settings_for(sections)(**kwargs)
        return NextcovConfig.model_validate(settings.model_dump())
    except ValidationError as e:
        raise _as_config_error(e) from e
