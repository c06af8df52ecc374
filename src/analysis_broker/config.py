"""Configuration with layered resolution: defaults -> YAML -> env -> overrides.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``ANALYSIS_BROKER_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from analysis_broker.models import AnalysisDepth, OutputFormat

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class QuotaSettings(BaseModel):
    """Two-window request quota for the external tool."""

    enabled: bool = True
    requests_per_minute: int = Field(default=60, gt=0)
    requests_per_day: int = Field(default=1000, gt=0)
    poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Longest single sleep while waiting for quota.",
    )


class CacheSettings(BaseModel):
    """Result Store configuration."""

    enabled: bool = True
    ttl_seconds: float = Field(default=3600, gt=0)
    max_entries: int = Field(default=100, gt=0)
    directory: Path = Path(".analysis-broker/cache")
    persist: bool = Field(
        default=True, description="Mirror entries to one JSON file per key."
    )


class ToolSettings(BaseModel):
    """How the external analysis binary is invoked."""

    binary: str = "gemini"
    timeout_seconds: float = Field(default=300, gt=0)
    model: str | None = None
    path_prefix: str = "@"
    prompt_flag: str = "-p"
    json_flag: str = "--json"
    force_json_output: bool = Field(
        default=False,
        description="Pass the JSON flag for every request, not only JSON ones.",
    )


class AnalysisSettings(BaseModel):
    """Request defaults and the exclude list for the file-selection layer."""

    default_depth: AnalysisDepth = AnalysisDepth.MODERATE
    default_output_format: OutputFormat = OutputFormat.MARKDOWN
    exclude_patterns: list[str] = Field(
        default_factory=lambda: [
            "node_modules/**",
            "dist/**",
            ".git/**",
            "*.min.js",
            "*.map",
            "coverage/**",
            ".next/**",
            "build/**",
        ]
    )


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``analysis-broker.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``ANALYSIS_BROKER_``)
        4. Programmatic overrides passed to ``Settings.load``
    """

    model_config = SettingsConfigDict(
        env_prefix="ANALYSIS_BROKER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="analysis-broker.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    tool: ToolSettings = Field(default_factory=ToolSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings > env_settings > dotenv (.env) > yaml > defaults
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "analysis-broker.yaml"
        )
        sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file))

        return tuple(sources)

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
