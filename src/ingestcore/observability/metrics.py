"""
Defines and manages Prometheus metrics for the ingestion pipeline.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from ingestcore.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

_TEST_MODE = os.environ.get("INGEST_TEST_MODE", "0") == "1"

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric is created so that re-importing this module (as
# the test suite does) reuses the registered collectors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    """Create (or reuse) every pipeline metric."""
    return {
        "items_processed": Counter(
            "ingestcore_items_processed_total",
            "Items that reached a terminal processing state",
            ["outcome"],
        ),
        "items_rejected": Counter(
            "ingestcore_items_rejected_total",
            "Items rejected by the processing pipeline",
            ["reason"],
        ),
        "processing_duration_seconds": Histogram(
            "ingestcore_processing_duration_seconds",
            "Wall-clock time from intake to terminal state for one item",
            ["pipeline"],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        ),
        "quality_score": Histogram(
            "ingestcore_quality_score",
            "Distribution of item quality scores",
            ["content_type"],
            buckets=[10, 25, 30, 40, 50, 60, 70, 80, 90, 100],
        ),
        "duplicates_detected": Counter(
            "ingestcore_duplicates_detected_total",
            "Items recognized as duplicates of stored content",
        ),
        "storage_errors": Counter(
            "ingestcore_storage_errors_total",
            "Storage failures surfaced to the pipeline",
            ["operation"],
        ),
        "source_fetch_duration_seconds": Histogram(
            "ingestcore_source_fetch_duration_seconds",
            "Time taken by a fetch adapter for one source",
            ["source_type"],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
        ),
        "source_fetch_failures": Counter(
            "ingestcore_source_fetch_failures_total",
            "Failed fetch attempts including timeouts",
            ["source_type"],
        ),
        "sources_in_flight": Gauge(
            "ingestcore_sources_in_flight",
            "Sources currently being fetched or processed",
        ),
        "crawl_runs": Counter(
            "ingestcore_crawl_runs_total",
            "Crawl runs by final status",
            ["status"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of the Prometheus exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        """Starts the Prometheus HTTP exporter if a port is configured."""
        if self.config.prometheus_port and not self._started and not _TEST_MODE:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._started = True
