"""
Configuration management for IngestCore using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

FREQUENCY_NAMES = ("hourly", "twicedaily", "daily", "weekly")

# --- Nested Configuration Models ---


class SQLiteConfig(BaseModel):
    """Configuration for the SQLite content database."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".ingestcore" / "content.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="How long a writer waits on a locked database.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class SourceConfig(BaseModel):
    """Defaults and adaptive interval tuning for content sources."""

    default_fetch_interval: int = Field(default=3600, gt=0, description="Initial fetch interval in seconds.")
    min_interval: int = Field(default=1800, gt=0, description="Lower bound for a source's fetch interval.")
    max_interval: int = Field(default=86400, gt=0, description="Upper bound for a source's fetch interval.")
    quiet_backoff_multiplier: float = Field(
        default=1.5, gt=1.0, description="Interval multiplier when a fetch found items but none were new."
    )
    hot_speedup_multiplier: float = Field(
        default=0.8, gt=0.0, lt=1.0, description="Interval multiplier when a fetch found many new items."
    )
    hot_new_items_threshold: int = Field(
        default=5, ge=0, description="New items above this count mark a source as hot."
    )

    @model_validator(mode="after")
    def check_interval_bounds(self) -> SourceConfig:
        if self.min_interval > self.max_interval:
            raise ValueError(f"min_interval ({self.min_interval}) must not exceed max_interval ({self.max_interval})")
        if not self.min_interval <= self.default_fetch_interval <= self.max_interval:
            raise ValueError(
                f"default_fetch_interval ({self.default_fetch_interval}) must lie within "
                f"[{self.min_interval}, {self.max_interval}]"
            )
        return self


class SchedulerConfig(BaseModel):
    """Periodic trigger configuration."""

    enabled: bool = True
    stagger_seconds: int = Field(default=300, ge=0, description="Offset between consecutive frequency triggers.")
    type_frequencies: Dict[str, str] = Field(
        default_factory=lambda: {"feed": "hourly", "api": "hourly", "scrape": "daily", "webhook": "daily"},
        description="Frequency bucket per source type.",
    )
    default_frequency: str = Field(default="daily", description="Bucket for source types missing from the map.")

    @field_validator("type_frequencies")
    @classmethod
    def check_frequencies(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = {name for name in v.values() if name not in FREQUENCY_NAMES}
        if unknown:
            raise ValueError(f"Unknown frequency bucket(s): {sorted(unknown)}")
        return v

    @field_validator("default_frequency")
    @classmethod
    def check_default_frequency(cls, v: str) -> str:
        if v not in FREQUENCY_NAMES:
            raise ValueError(f"Unknown frequency bucket: {v}")
        return v


class CrawlerConfig(BaseModel):
    """Crawl run configuration."""

    fetch_timeout: float = Field(default=60.0, gt=0, description="Per-source fetch timeout in seconds.")
    max_concurrency: int = Field(default=5, ge=1, description="Sources fetched concurrently within one run.")
    item_concurrency: int = Field(default=10, ge=1, description="Items of one source processed concurrently.")
    retry_attempts: int = Field(default=1, ge=0, description="Extra attempts for sources that failed in a run.")
    source_limit: int = Field(default=50, ge=1, description="Maximum number of sources per run.")
    run_log_size: int = Field(default=1000, ge=1, description="Number of run log entries kept in memory.")
    retry_failed_items: bool = Field(default=True, description="Replay queued failed items at the start of a run.")
    adapters: Dict[str, str] = Field(
        default_factory=dict,
        description="Fetch adapter per source type as an import path, e.g. {'feed': 'mypkg.feeds:FeedAdapter'}.",
    )


class ProcessingConfig(BaseModel):
    """Per-item processing pipeline configuration."""

    pipeline: Literal["basic", "enhanced"] = Field(default="basic", description="Processing pipeline variant.")
    language: str = Field(default="en", description="Only items in this language pass the basic pipeline.")
    detect_language: bool = Field(default=True, description="Detect the language when items do not declare one.")
    max_age_days: int = Field(default=7, ge=0, description="Items published longer ago are rejected as too old.")
    required_fields: Dict[str, List[str]] = Field(
        default_factory=lambda: {"default": ["title", "content", "source_url"]},
        description="Required item fields per content type; 'default' applies to unlisted types.",
    )

    @field_validator("required_fields")
    @classmethod
    def check_default_required(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        if "default" not in v:
            raise ValueError("required_fields must define a 'default' entry")
        return v


class QualityConfig(BaseModel):
    """Quality scoring thresholds."""

    min_score: int = Field(default=40, ge=0, le=100, description="Minimum quality score to pass without warning.")
    auto_reject_score: int = Field(default=25, ge=0, le=100, description="Items scoring below are rejected.")
    max_suggestions: int = Field(default=5, ge=0, description="Maximum improvement suggestions per item.")

    @model_validator(mode="after")
    def check_thresholds(self) -> QualityConfig:
        if self.auto_reject_score > self.min_score:
            raise ValueError("auto_reject_score must not exceed min_score")
        return self


class DedupConfig(BaseModel):
    """Duplicate detection configuration."""

    lookup_retries: int = Field(default=3, ge=1, description="Attempts for a fingerprint lookup before failing.")
    candidate_limit: int = Field(default=5, ge=1, description="Fuzzy duplicate candidates returned.")
    report_days: int = Field(default=30, ge=1, description="Look-back window of the duplicate report.")
    report_limit: int = Field(default=100, ge=1, description="Maximum log entries in the duplicate report.")
    reindex_batch_size: int = Field(default=50, ge=1)


class RecoveryConfig(BaseModel):
    """Failed item retry queue configuration."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: int = Field(default=60, ge=1)
    max_delay_seconds: int = Field(default=86400, ge=1)


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs to console.",
    )
    prometheus_port: int | None = Field(
        default=None,
        description="Port for Prometheus metrics exporter. None to disable.",
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "IngestCore"
    version: str = "0.1.0"
    storage: SQLiteConfig = Field(default_factory=SQLiteConfig)
    sources: SourceConfig = Field(default_factory=SourceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="INGEST_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "ingestcore.yaml",
        current_dir / "ingestcore.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None
