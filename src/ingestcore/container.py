"""
Dependency injection container wiring the IngestCore components.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union
from uuid import uuid4

import aiosqlite
import structlog

from ingestcore.config import Config
from ingestcore.crawler.runner import CrawlRunner
from ingestcore.dedup.deduplicator import Deduplicator
from ingestcore.dedup.fingerprint import FingerprintGenerator
from ingestcore.events import EventBus
from ingestcore.observability import MetricsManager
from ingestcore.processor import ContentProcessor
from ingestcore.protocols import EnhancedProcessingHook, EnrichmentProvider, FetchAdapter, SourceType
from ingestcore.quality.assessor import QualityScorer
from ingestcore.recovery.dead_letter import FailedItemQueue
from ingestcore.scheduler import Scheduler
from ingestcore.sources.manager import SourceManager
from ingestcore.storage.content_store import ContentStore
from ingestcore.storage.sqlite_manager import SQLiteManager

T = TypeVar("T")


def load_adapter(path: str) -> FetchAdapter:
    """Instantiate a fetch adapter from a ``package.module:ClassName`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Adapter path must look like 'module:attribute', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory() if inspect.isclass(factory) else factory  # type: ignore[no-any-return]


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., Union[T, Awaitable[T]]], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    async def get(self) -> T:
        """Get or create the instance."""
        async with self._lock:
            if not self._initialized:
                instance = self._factory(*self._args, **self._kwargs)
                if inspect.isawaitable(instance):
                    instance = await instance
                if hasattr(instance, "initialize") and callable(getattr(instance, "initialize", None)):
                    await instance.initialize()  # type: ignore
                self._instance = instance  # type: ignore[assignment]
                self._initialized = True
        # At this point _instance cannot be None due to the check above
        assert self._instance is not None
        return self._instance

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance and hasattr(self._instance, "close") and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Composition root for the ingestion pipeline.

    Every component receives its collaborators through its constructor; the
    container builds them lazily from one ``Config`` and owns their lifecycle.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        adapters: Optional[Mapping[Union[SourceType, str], FetchAdapter]] = None,
        enrichment: Optional[EnrichmentProvider] = None,
        enhanced_hook: Optional[EnhancedProcessingHook] = None,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.events = EventBus()
        self.adapters: Dict[Union[SourceType, str], FetchAdapter] = dict(adapters or {})
        self.enrichment = enrichment
        self.enhanced_hook = enhanced_hook

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._shutdown_handlers: List[Callable[[], Any]] = []
        self.metrics: Optional[MetricsManager] = None

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration and prepare the component factories."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.metrics = MetricsManager(self.cfg.monitoring)
        self.metrics.start()
        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
            pipeline=self.cfg.processing.pipeline,
        )

    def load_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()
        return self.config

    @property
    def cfg(self) -> Config:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before use")
        return self.config

    def _create_instances(self) -> None:
        self._instances = {
            "database": LazyInstance(SQLiteManager, self.cfg.storage),
            "deduplicator": LazyInstance(self._build_deduplicator),
            "quality": LazyInstance(QualityScorer, self.cfg.quality),
            "content_store": LazyInstance(self._build_content_store),
            "failed_items": LazyInstance(self._build_failed_items),
            "processor": LazyInstance(self._build_processor),
            "sources": LazyInstance(self._build_source_manager),
            "crawler": LazyInstance(self._build_crawler),
            "scheduler": LazyInstance(self._build_scheduler),
        }

    async def _build_deduplicator(self) -> Deduplicator:
        return Deduplicator(await self.get_database(), self.cfg.dedup, FingerprintGenerator())

    async def _build_content_store(self) -> ContentStore:
        return ContentStore(
            await self.get_database(), await self.get_deduplicator(), self.events, self.cfg.processing
        )

    async def _build_failed_items(self) -> FailedItemQueue:
        return FailedItemQueue(await self.get_database(), self.cfg.recovery)

    async def _build_processor(self) -> ContentProcessor:
        return ContentProcessor(
            self.cfg.processing,
            self.cfg.quality,
            await self.get_deduplicator(),
            await self.get_content_store(),
            scorer=await self.get_quality(),
            events=self.events,
            failed_items=await self.get_failed_items(),
            enrichment=self.enrichment,
            enhanced_hook=self.enhanced_hook,
        )

    async def _build_source_manager(self) -> SourceManager:
        return SourceManager(await self.get_database(), self.cfg.sources)

    async def _build_crawler(self) -> CrawlRunner:
        runner = CrawlRunner(
            await self.get_source_manager(),
            await self.get_processor(),
            await self.get_database(),
            self.cfg.crawler,
            events=self.events,
            failed_items=await self.get_failed_items(),
        )
        for source_type, path in self.cfg.crawler.adapters.items():
            if source_type not in self.adapters:
                runner.register_adapter(source_type, load_adapter(path))
        for source_type, adapter in self.adapters.items():
            runner.register_adapter(source_type, adapter)
        return runner

    async def _build_scheduler(self) -> Scheduler:
        return Scheduler(await self.get_crawler(), self.cfg.scheduler)

    async def _get(self, name: str) -> Any:
        if name not in self._instances:
            raise RuntimeError("Container is not initialized")
        return await self._instances[name].get()

    async def get_database(self) -> SQLiteManager:
        return await self._get("database")  # type: ignore[no-any-return]

    async def get_deduplicator(self) -> Deduplicator:
        return await self._get("deduplicator")  # type: ignore[no-any-return]

    async def get_quality(self) -> QualityScorer:
        return await self._get("quality")  # type: ignore[no-any-return]

    async def get_content_store(self) -> ContentStore:
        return await self._get("content_store")  # type: ignore[no-any-return]

    async def get_failed_items(self) -> FailedItemQueue:
        return await self._get("failed_items")  # type: ignore[no-any-return]

    async def get_processor(self) -> ContentProcessor:
        return await self._get("processor")  # type: ignore[no-any-return]

    async def get_source_manager(self) -> SourceManager:
        return await self._get("sources")  # type: ignore[no-any-return]

    async def get_crawler(self) -> CrawlRunner:
        return await self._get("crawler")  # type: ignore[no-any-return]

    async def get_scheduler(self) -> Scheduler:
        return await self._get("scheduler")  # type: ignore[no-any-return]

    async def register_adapter(self, source_type: Union[SourceType, str], adapter: FetchAdapter) -> None:
        """Register a fetch adapter, also on an already built crawler."""
        self.adapters[source_type] = adapter
        crawler = self._instances.get("crawler")
        if crawler is not None and crawler.initialized:
            (await crawler.get()).register_adapter(source_type, adapter)

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        scheduler = self._instances.get("scheduler")
        if scheduler is not None and scheduler.initialized:
            await (await scheduler.get()).clear_all_triggers()

        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        # The database goes last; everything else holds a reference to it.
        for name in reversed(list(self._instances)):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    async def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        status: Dict[str, Any] = {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "config_path": str(self.config_path) if self.config_path else None,
            "components": {name: inst.initialized for name, inst in self._instances.items()},
            "events_published": self.events.published_count,
            "event_handler_failures": self.events.handler_failures,
        }
        if self.is_running:
            try:
                db = await self.get_database()
                await db.fetch_value("SELECT 1")
                status["database"] = "ok"
            except (aiosqlite.Error, OSError) as e:
                status["database"] = f"error: {e}"
            crawler = self._instances.get("crawler")
            if crawler is not None and crawler.initialized:
                status["crawler"] = (await crawler.get()).get_status()
        return status
