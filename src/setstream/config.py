"""Pipeline settings models using Pydantic."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .template import resolve_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yml"
CONFIG_ENV_VAR = "SETSTREAM_CONFIG"

LAKE_ENTITIES = ("tournaments", "matches", "match_details", "tournament_rankings")


class FieldsConfig(BaseModel):
    """VIS attribute lists requested per entity."""

    tournament: list[str] = Field(
        default_factory=lambda: [
            "No", "Name", "Code", "Season", "StartDate", "EndDate",
            "CountryName", "Gender", "Type",
        ]
    )
    match: list[str] = Field(
        default_factory=lambda: [
            "No", "NoTournament", "TeamNameA", "TeamNameB",
            "MatchPointsA", "MatchPointsB", "DateLocal", "City", "CountryName",
        ]
    )
    match_detail: list[str] = Field(
        default_factory=lambda: [
            "No", "NoTournament", "DateLocal", "TeamNameA", "TeamNameB",
            "MatchPointsA", "MatchPointsB", "Status", "DurationTotal",
        ]
    )
    tournament_ranking: list[str] = Field(
        default_factory=lambda: ["Rank", "TeamName", "TeamCode", "NoTeam"]
    )


class ApiConfig(BaseModel):
    """Remote source and pacing settings."""

    base_url: str = "https://www.fivb.org/Vis2009/XmlRequest.asmx"
    rate_limit_delay_seconds: float = Field(default=1.0, ge=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff_base: float = Field(default=2.0, ge=0)
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    fields: FieldsConfig = Field(default_factory=FieldsConfig)


class EloConfig(BaseModel):
    """Rating engine parameters."""

    base_rating: float = 1500.0
    k_factor: float = Field(default=20.0, gt=0)
    upset_threshold: float = Field(default=0.5, ge=0, lt=1)


class PipelineWindowConfig(BaseModel):
    """Extraction window settings."""

    rolling_window_days: int = Field(default=365, ge=1)
    backfill_days: int = Field(default=730, ge=1)


class StoragePaths(BaseModel):
    """Filesystem locations owned by the pipeline."""

    lake_path: Path = Path("data/lake")
    warehouse_path: Path = Path("data/warehouse/setstream.duckdb")
    state_path: Path = Path("data/state/pipeline_state.json")
    export_path: Path = Path("data/exports")
    marts_path: Optional[Path] = None  # None = packaged sql/marts


class QualityConfig(BaseModel):
    """Quality gate thresholds (fractions of failing rows)."""

    fail_on_critical: bool = True
    warn_at: float = Field(default=0.05, ge=0, le=1)
    stop_at: float = Field(default=0.10, ge=0, le=1)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "QualityConfig":
        """warn_at must not exceed stop_at."""
        if self.warn_at > self.stop_at:
            raise ValueError("quality.warn_at must be <= quality.stop_at")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: Optional[Path] = None


class Settings(BaseModel):
    """Complete pipeline settings."""

    api: ApiConfig = Field(default_factory=ApiConfig)
    elo: EloConfig = Field(default_factory=EloConfig)
    pipeline: PipelineWindowConfig = Field(default_factory=PipelineWindowConfig)
    storage: StoragePaths = Field(default_factory=StoragePaths)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(path: str | Path | None = None, **template_vars: Any) -> Settings:
    """Load pipeline settings from a YAML file.

    Resolution order for the path: explicit argument, ``SETSTREAM_CONFIG``,
    then ``config.yml`` in the working directory.

    Args:
        path: Path to YAML settings file
        **template_vars: Extra ``${NAME}`` placeholders

    Returns:
        Validated Settings instance

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ConfigurationError: If the settings are invalid
    """
    config_path = Path(path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))

    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings root must be a mapping: {config_path}")

    try:
        return Settings(**resolve_config(raw, **template_vars))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings in {config_path}:\n{e}") from e


def ensure_directories(settings: Settings) -> None:
    """Create lake entity directories and parents of every output file."""
    storage = settings.storage
    dirs = [
        storage.lake_path,
        *(storage.lake_path / entity for entity in LAKE_ENTITIES),
        storage.warehouse_path.parent,
        storage.state_path.parent,
        storage.export_path,
    ]
    if settings.logging.file:
        dirs.append(settings.logging.file.parent)

    for d in dirs:
        if not d.exists():
            d.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Created directory: {d}")
