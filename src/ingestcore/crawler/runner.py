"""
Crawl runs: fetch due sources through their adapters and process the items.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import aiosqlite
import structlog
from structlog.contextvars import bound_contextvars

from ingestcore.config.config import CrawlerConfig
from ingestcore.events import CrawlCompleted, EventBus
from ingestcore.exceptions import AdapterNotFoundError, CrawlerBusyError, StorageError
from ingestcore.observability import gauge_add, histogram, increment
from ingestcore.processor import ContentProcessor
from ingestcore.protocols import (
    ContentSource,
    ErrorSeverity,
    FetchAdapter,
    FetchStats,
    ProcessingResult,
    RejectionReason,
    SourceType,
    StoreStatus,
)
from ingestcore.recovery.dead_letter import FailedItemQueue
from ingestcore.sources.manager import SourceManager
from ingestcore.storage.sqlite_manager import SQLiteManager
from ingestcore.utils import to_iso, utcnow

logger = structlog.get_logger(__name__)

_FAULT_REASONS = frozenset({RejectionReason.STORAGE_ERROR, RejectionReason.PROCESSING_ERROR})


@dataclass
class CrawlRequest:
    """What a crawl run should cover."""

    trigger: str = "manual"
    source_types: Optional[Sequence[Union[SourceType, str]]] = None
    source_ids: Optional[Sequence[int]] = None
    force: bool = False


@dataclass
class SourceOutcome:
    """Result of crawling one source."""

    source_id: int
    success: bool
    items_found: int = 0
    items_processed: int = 0
    items_rejected: int = 0
    new_items: int = 0
    items_dropped: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0
    attempts: int = 1


@dataclass
class CrawlSummary:
    run_id: str
    trigger: str
    status: str = "running"
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    sources_processed: int = 0
    sources_failed: int = 0
    items_found: int = 0
    items_processed: int = 0
    items_rejected: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0
    outcomes: List[SourceOutcome] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"

    def aggregate(self) -> None:
        self.sources_processed = sum(1 for o in self.outcomes if o.success)
        self.sources_failed = sum(1 for o in self.outcomes if not o.success)
        self.items_found = sum(o.items_found for o in self.outcomes)
        self.items_processed = sum(o.items_processed for o in self.outcomes)
        self.items_rejected = sum(o.items_rejected for o in self.outcomes)
        self.errors = [f"source {o.source_id}: {e}" for o in self.outcomes for e in o.errors]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = to_iso(self.started_at)
        data["finished_at"] = to_iso(self.finished_at)
        return data


class CrawlRunner:
    """
    Runs crawls over content sources.

    Sources are fetched by a bounded worker pool fed from a queue. Each fetch
    has its own timeout, and the items of a fetched source are processed with
    bounded concurrency. Only one run may be active at a time.
    """

    def __init__(
        self,
        sources: SourceManager,
        processor: ContentProcessor,
        db: SQLiteManager,
        config: Optional[CrawlerConfig] = None,
        events: Optional[EventBus] = None,
        failed_items: Optional[FailedItemQueue] = None,
    ) -> None:
        self.sources = sources
        self.processor = processor
        self.db = db
        self.config = config or CrawlerConfig()
        self.events = events or processor.events
        self.failed_items = failed_items
        self._adapters: Dict[SourceType, FetchAdapter] = {}
        self._cancel_event = asyncio.Event()
        self._running = False
        self._current_run: Optional[str] = None
        self.last_run: Optional[CrawlSummary] = None
        self.last_error: Optional[str] = None
        self.run_log: Deque[Dict[str, Any]] = deque(maxlen=self.config.run_log_size)

    # ------------------------------------------------------------------
    # Adapters and control
    # ------------------------------------------------------------------

    def register_adapter(self, source_type: Union[SourceType, str], adapter: FetchAdapter) -> None:
        if not isinstance(adapter, FetchAdapter):
            raise TypeError(f"{type(adapter).__name__} does not implement fetch(source)")
        kind = source_type if isinstance(source_type, SourceType) else SourceType(source_type)
        self._adapters[kind] = adapter
        logger.debug("Fetch adapter registered", source_type=kind.value, adapter=type(adapter).__name__)

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> bool:
        """Ask the active run to stop. In-flight sources finish; queued ones are skipped."""
        if not self._running:
            return False
        self._cancel_event.set()
        logger.info("Crawl cancellation requested", run_id=self._current_run)
        return True

    def _log(self, event: str, **fields: Any) -> None:
        self.run_log.append({"time": to_iso(utcnow()), "event": event, **fields})

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(self, request: Optional[CrawlRequest] = None) -> CrawlSummary:
        """
        Execute one crawl run.

        Raises:
            CrawlerBusyError: another run is in progress.
        """
        request = request or CrawlRequest()
        if self._running:
            raise CrawlerBusyError("Crawler is already running")
        self._running = True
        self._cancel_event.clear()

        summary = CrawlSummary(run_id=uuid4().hex, trigger=request.trigger)
        self._current_run = summary.run_id
        start = time.perf_counter()

        with bound_contextvars(crawl_run_id=summary.run_id):
            try:
                await self._record_run_start(summary)
                self._log("run_started", run_id=summary.run_id, trigger=request.trigger)
                logger.info("Crawl run started", trigger=request.trigger, force=request.force)

                if self.config.retry_failed_items and self.failed_items is not None:
                    await self.retry_failed_items()

                candidates = await self._select_sources(request)
                summary.outcomes = await self._dispatch(candidates)

                for attempt in range(self.config.retry_attempts):
                    failed_ids = {o.source_id for o in summary.outcomes if not o.success}
                    if not failed_ids or self._cancel_event.is_set():
                        break
                    logger.info("Retrying failed sources", attempt=attempt + 1, sources=sorted(failed_ids))
                    retried = await self._dispatch([s for s in candidates if s.id in failed_ids])
                    by_id = {o.source_id: o for o in retried}
                    for index, outcome in enumerate(summary.outcomes):
                        if outcome.source_id in by_id:
                            by_id[outcome.source_id].attempts = outcome.attempts + 1
                            summary.outcomes[index] = by_id[outcome.source_id]

                summary.aggregate()
                summary.status = "cancelled" if self._cancel_event.is_set() else "completed"
            except Exception as e:
                summary.aggregate()
                summary.status = "failed"
                summary.errors.append(str(e))
                self.last_error = str(e)
                logger.error("Crawl run failed", error=str(e))
                raise
            finally:
                summary.finished_at = utcnow()
                summary.duration = time.perf_counter() - start
                self._running = False
                self._current_run = None
                self.last_run = summary
                await self._finish_run(summary)

        return summary

    async def _select_sources(self, request: CrawlRequest) -> List[ContentSource]:
        if request.force:
            candidates = await self.sources.load_active_sources()
            if request.source_types is not None:
                types = {t if isinstance(t, SourceType) else SourceType(t) for t in request.source_types}
                candidates = [s for s in candidates if s.type in types]
            if request.source_ids is not None:
                ids = set(request.source_ids)
                candidates = [s for s in candidates if s.id in ids]
        else:
            candidates = await self.sources.get_due_sources(
                source_types=request.source_types, source_ids=request.source_ids
            )
        selected = candidates[: self.config.source_limit]
        logger.info("Sources selected", count=len(selected), skipped=len(candidates) - len(selected))
        return selected

    async def _dispatch(self, sources: List[ContentSource]) -> List[SourceOutcome]:
        """Crawl ``sources`` with a bounded worker pool."""
        if not sources:
            return []
        outcomes: List[SourceOutcome] = []
        queue: asyncio.Queue[Optional[ContentSource]] = asyncio.Queue()
        num_workers = min(self.config.max_concurrency, len(sources))

        async def producer() -> None:
            for source in sources:
                if self._cancel_event.is_set():
                    logger.info("Cancellation requested, stopping source dispatch")
                    break
                await queue.put(source)
            for _ in range(num_workers):
                await queue.put(None)

        async def worker() -> None:
            while True:
                source = await queue.get()
                try:
                    if source is None:
                        break
                    if self._cancel_event.is_set():
                        continue
                    outcomes.append(await self.crawl_source(source))
                finally:
                    queue.task_done()

        async with asyncio.TaskGroup() as tg:
            tg.create_task(producer())
            for _ in range(num_workers):
                tg.create_task(worker())
        return outcomes

    async def crawl_source(self, source: ContentSource) -> SourceOutcome:
        """Fetch one source, process its items and record the attempt. Never raises."""
        outcome = SourceOutcome(source_id=source.id, success=False)
        start = time.perf_counter()
        gauge_add("sources_in_flight", 1)
        with bound_contextvars(source_id=source.id):
            try:
                raw_items = await self._fetch(source)
            except Exception as e:
                outcome.errors.append(str(e))
                outcome.duration = time.perf_counter() - start
                await self._record_fetch_failure(source, e)
                gauge_add("sources_in_flight", -1)
                return outcome

            try:
                results = await self._process_items(source, raw_items, outcome)
                outcome.items_found = len(raw_items)
                outcome.items_processed = sum(1 for r in results if r.accepted)
                outcome.items_rejected = sum(1 for r in results if not r.accepted)
                outcome.new_items = sum(1 for r in results if r.stored is StoreStatus.INSERTED)
                outcome.errors.extend(r.message for r in results if r.reason in _FAULT_REASONS)
                outcome.duration = time.perf_counter() - start
                stats = FetchStats(
                    items_found=outcome.items_found,
                    new_items=outcome.new_items,
                    items_rejected=outcome.items_rejected,
                    processing_time=outcome.duration,
                    error_count=len(outcome.errors),
                )
                await self.sources.update_source_status(source.id, True, stats)
                outcome.success = True
                logger.info(
                    "Source crawled",
                    items_found=outcome.items_found,
                    processed=outcome.items_processed,
                    rejected=outcome.items_rejected,
                    new=outcome.new_items,
                    dropped=outcome.items_dropped,
                )
            except (StorageError, aiosqlite.Error) as e:
                outcome.errors.append(f"Failed to record source status: {e}")
                logger.error("Failed to record source status", error=str(e))
            finally:
                gauge_add("sources_in_flight", -1)
        return outcome

    async def _fetch(self, source: ContentSource) -> List[Dict[str, Any]]:
        adapter = self._adapters.get(source.type)
        if adapter is None:
            raise AdapterNotFoundError(f"No fetch adapter registered for source type '{source.type.value}'")
        start = time.perf_counter()
        try:
            items = await asyncio.wait_for(adapter.fetch(source), timeout=self.config.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Fetch timed out after {self.config.fetch_timeout:g}s") from e
        finally:
            histogram(
                "source_fetch_duration_seconds", time.perf_counter() - start, labels={"source_type": source.type.value}
            )
        return list(items or [])

    async def _process_items(
        self, source: ContentSource, raw_items: List[Dict[str, Any]], outcome: SourceOutcome
    ) -> List[ProcessingResult]:
        semaphore = asyncio.Semaphore(self.config.item_concurrency)

        async def process_one(raw: Dict[str, Any]) -> Optional[ProcessingResult]:
            async with semaphore:
                if self._cancel_event.is_set():
                    outcome.items_dropped += 1
                    return None
                return await self.processor.process(self._with_source_metadata(raw, source), source)

        results = await asyncio.gather(*(process_one(raw) for raw in raw_items))
        return [r for r in results if r is not None]

    @staticmethod
    def _with_source_metadata(raw: Dict[str, Any], source: ContentSource) -> Dict[str, Any]:
        item = dict(raw)
        item.setdefault("source_id", source.id)
        item.setdefault("source_name", source.name)
        if not item.get("source_url"):
            item["source_url"] = source.url
        return item

    async def _record_fetch_failure(self, source: ContentSource, error: Exception) -> None:
        increment("source_fetch_failures", labels={"source_type": source.type.value})
        severity = ErrorSeverity.HIGH if isinstance(error, AdapterNotFoundError) else ErrorSeverity.MEDIUM
        logger.warning("Source fetch failed", error=str(error), error_type=type(error).__name__)
        try:
            await self.sources.log_source_error(
                source.id, type(error).__name__, str(error), context={"url": source.url}, severity=severity
            )
            await self.sources.update_source_status(source.id, False, FetchStats(error_count=1))
        except (StorageError, aiosqlite.Error) as e:
            logger.error("Failed to record fetch failure", error=str(e))

    # ------------------------------------------------------------------
    # Failed items
    # ------------------------------------------------------------------

    async def retry_failed_items(self, limit: int = 100) -> Dict[str, int]:
        """Replay queued items whose retry time has come."""
        counts = {"retried": 0, "recovered": 0, "failed": 0}
        if self.failed_items is None:
            return counts

        for failed in await self.failed_items.get_retryable(limit=limit):
            counts["retried"] += 1
            source = await self.sources.get_source(failed.source_id) if failed.source_id is not None else None
            result = await self.processor.process(failed.payload, source, queue_failures=False)
            if result.reason in _FAULT_REASONS:
                counts["failed"] += 1
                await self.failed_items.mark_retry_result(failed.item_id, False, StorageError(result.message))
            else:
                counts["recovered"] += 1
                await self.failed_items.mark_retry_result(failed.item_id, True)

        if counts["retried"]:
            logger.info("Failed items replayed", **counts)
            self._log("failed_items_replayed", **counts)
        return counts

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    async def _record_run_start(self, summary: CrawlSummary) -> None:
        await self.db.execute(
            """
            INSERT INTO crawler_runs (
                run_id, trigger, status, started_at, sources_processed, sources_failed,
                items_found, items_processed, items_rejected, errors, duration
            ) VALUES (?, ?, ?, ?, 0, 0, 0, 0, 0, 0, 0)
            """,
            (summary.run_id, summary.trigger, summary.status, to_iso(summary.started_at)),
        )

    async def _finish_run(self, summary: CrawlSummary) -> None:
        increment("crawl_runs", labels={"status": summary.status})
        self._log(
            "run_finished",
            run_id=summary.run_id,
            status=summary.status,
            sources_processed=summary.sources_processed,
            sources_failed=summary.sources_failed,
            items_processed=summary.items_processed,
            duration=round(summary.duration, 3),
        )
        try:
            await self.db.execute(
                """
                UPDATE crawler_runs
                SET status = ?, finished_at = ?, sources_processed = ?, sources_failed = ?, items_found = ?,
                    items_processed = ?, items_rejected = ?, errors = ?, duration = ?
                WHERE run_id = ?
                """,
                (
                    summary.status,
                    to_iso(summary.finished_at),
                    summary.sources_processed,
                    summary.sources_failed,
                    summary.items_found,
                    summary.items_processed,
                    summary.items_rejected,
                    len(summary.errors),
                    summary.duration,
                    summary.run_id,
                ),
            )
        except aiosqlite.Error as e:
            logger.error("Failed to record crawl run", error=str(e))
        if summary.errors:
            self.last_error = summary.errors[-1]
        logger.info(
            "Crawl run finished",
            status=summary.status,
            sources_processed=summary.sources_processed,
            sources_failed=summary.sources_failed,
            items_found=summary.items_found,
            items_processed=summary.items_processed,
            items_rejected=summary.items_rejected,
            duration=round(summary.duration, 3),
        )
        await self.events.publish(CrawlCompleted(run_id=summary.run_id, summary=summary.to_dict()))

    async def get_run_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.db.fetch_all("SELECT * FROM crawler_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,))

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "current_run": self._current_run,
            "last_run": self.last_run.to_dict() if self.last_run else None,
            "last_error": self.last_error,
            "adapters": sorted(kind.value for kind in self._adapters),
            "run_log": list(self.run_log)[-20:],
        }
