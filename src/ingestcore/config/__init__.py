"""Typed configuration for IngestCore."""

from __future__ import annotations

from .config import (
    FREQUENCY_NAMES,
    Config,
    CrawlerConfig,
    DedupConfig,
    MonitoringConfig,
    ProcessingConfig,
    QualityConfig,
    RecoveryConfig,
    SchedulerConfig,
    SourceConfig,
    SQLiteConfig,
    find_config_file,
)

__all__ = [
    "FREQUENCY_NAMES",
    "Config",
    "CrawlerConfig",
    "DedupConfig",
    "MonitoringConfig",
    "ProcessingConfig",
    "QualityConfig",
    "RecoveryConfig",
    "SchedulerConfig",
    "SourceConfig",
    "SQLiteConfig",
    "find_config_file",
]
