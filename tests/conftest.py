"""
Test configuration for IngestCore.

Every test gets its own SQLite database under ``tmp_path``; components are
wired the same way the dependency container wires them.
"""

# Standard library imports
import asyncio
import os
from datetime import timedelta
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

# Third-party imports
import pytest
import pytest_asyncio
from prometheus_client import REGISTRY

# Set test mode to prevent the metrics exporter from binding a port
os.environ["INGEST_TEST_MODE"] = "1"

# Local imports
from ingestcore.config import (  # noqa: E402
    Config,
    CrawlerConfig,
    DedupConfig,
    ProcessingConfig,
    QualityConfig,
    RecoveryConfig,
    SourceConfig,
    SQLiteConfig,
)
from ingestcore.crawler.runner import CrawlRunner  # noqa: E402
from ingestcore.dedup import Deduplicator, FingerprintGenerator  # noqa: E402
from ingestcore.events import EventBus, PipelineEvent  # noqa: E402
from ingestcore.processor import ContentProcessor  # noqa: E402
from ingestcore.protocols import ContentSource  # noqa: E402
from ingestcore.quality import QualityScorer  # noqa: E402
from ingestcore.recovery import FailedItemQueue  # noqa: E402
from ingestcore.sources import SourceManager  # noqa: E402
from ingestcore.storage import ContentStore, SQLiteManager  # noqa: E402
from ingestcore.utils import to_iso, utcnow  # noqa: E402

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    os.environ["INGEST_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel tasks a test left behind, such as scheduler triggers."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Sample Content
# ============================================================================

ARTICLE_HTML = (
    "<p>The central bank announced on Tuesday that it will raise interest rates by a quarter point, "
    "according to an official statement released this morning. Analysts said the decision reflects "
    "continued concern about inflation across the economy.</p>"
    "<p>Markets reacted calmly to the announcement. Several economists reported that the move had been "
    "widely expected, and the data released last week showed prices rising faster than the bank's target.</p>"
    "<p>The bank said future decisions will depend on incoming data. Officials will review the economic "
    "outlook again at the next meeting in six weeks, and the statement gave no further guidance on rates.</p>"
)


# Fixed per session so repeated items normalize to the same date.
PUBLISHED = to_iso(utcnow() - timedelta(hours=2))


def make_raw_item(**overrides: Any) -> Dict[str, Any]:
    """A raw adapter item that passes every gate of the basic pipeline."""
    item: Dict[str, Any] = {
        "type": "news",
        "title": "Central Bank Raises Interest Rates",
        "content": ARTICLE_HTML,
        "summary": "The central bank raised interest rates by a quarter point.",
        "source_url": "https://news.example.com/2024/rates",
        "publish_date": PUBLISHED,
        "language": "en",
    }
    item.update(overrides)
    return {k: v for k, v in item.items() if v is not None}


@pytest.fixture
def raw_item() -> Callable[..., Dict[str, Any]]:
    """Factory for raw items; keyword overrides replace fields, ``None`` drops them."""
    return make_raw_item


# ============================================================================
# Fakes
# ============================================================================


class FakeAdapter:
    """Fetch adapter returning canned items, raising, or stalling on demand."""

    def __init__(
        self,
        items: Optional[List[Dict[str, Any]]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        per_source: Optional[Dict[int, List[Dict[str, Any]]]] = None,
    ) -> None:
        self.items = items or []
        self.error = error
        self.delay = delay
        self.per_source = per_source or {}
        self.calls: List[int] = []

    async def fetch(self, source: ContentSource) -> List[Dict[str, Any]]:
        self.calls.append(source.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(item) for item in self.per_source.get(source.id, self.items)]


class FakeEnrichment:
    """Enrichment provider with deterministic output."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    async def summarize(self, text: str) -> str:
        if self.fail:
            raise RuntimeError("summarizer unavailable")
        return text[:60]

    async def extract_entities(self, text: str) -> List[str]:
        return ["Central Bank"]

    async def extract_keywords(self, text: str) -> List[str]:
        return ["rates", "inflation"]


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def fake_enrichment_cls():
    return FakeEnrichment


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def config(tmp_path) -> Config:
    """Default configuration pointing at a per-test database."""
    return Config(
        storage=SQLiteConfig(db_path=tmp_path / "content.db", pool_size=3),
        sources=SourceConfig(),
        crawler=CrawlerConfig(fetch_timeout=2.0, retry_attempts=0, retry_failed_items=False),
        processing=ProcessingConfig(),
        quality=QualityConfig(),
        dedup=DedupConfig(lookup_retries=1),
        recovery=RecoveryConfig(),
    )


@pytest_asyncio.fixture
async def db(config) -> AsyncGenerator[SQLiteManager, None]:
    manager = SQLiteManager(config.storage)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(events) -> List[PipelineEvent]:
    """Every event published on the shared bus, in order."""
    recorded: List[PipelineEvent] = []
    events.subscribe(PipelineEvent, recorded.append)
    return recorded


@pytest.fixture
def deduplicator(db, config) -> Deduplicator:
    return Deduplicator(db, config.dedup, FingerprintGenerator())


@pytest.fixture
def store(db, deduplicator, events, config) -> ContentStore:
    return ContentStore(db, deduplicator, events, config.processing)


@pytest.fixture
def failed_items(db, config) -> FailedItemQueue:
    return FailedItemQueue(db, config.recovery)


@pytest.fixture
def processor(config, deduplicator, store, events, failed_items) -> ContentProcessor:
    return ContentProcessor(
        config.processing,
        config.quality,
        deduplicator,
        store,
        scorer=QualityScorer(config.quality),
        events=events,
        failed_items=failed_items,
    )


@pytest.fixture
def source_manager(db, config) -> SourceManager:
    return SourceManager(db, config.sources)


@pytest.fixture
def runner(source_manager, processor, db, config, events, failed_items) -> CrawlRunner:
    return CrawlRunner(source_manager, processor, db, config.crawler, events=events, failed_items=failed_items)


@pytest.fixture
def metric_value() -> Callable[..., float]:
    """Read a sample from the default Prometheus registry (0.0 when absent)."""

    def _read(name: str, labels: Optional[Dict[str, str]] = None) -> float:
        value = REGISTRY.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    return _read
