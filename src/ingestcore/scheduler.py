"""
Periodic and manual crawl triggers.

Source types are bucketed into frequencies. Each bucket gets one periodic
trigger, staggered from the others so that buckets never fire together. A
trigger only narrows the crawl to its source types; the due check in the
source manager decides what is actually fetched.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog

from ingestcore.config.config import SchedulerConfig
from ingestcore.crawler.runner import CrawlRequest, CrawlRunner, CrawlSummary
from ingestcore.exceptions import CrawlerBusyError
from ingestcore.protocols import Frequency, SourceType
from ingestcore.utils import to_iso, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ManualCrawlOutcome:
    success: bool
    message: str
    summary: Optional[CrawlSummary] = None


def _parse_frequency(value: Union[Frequency, str]) -> Optional[Frequency]:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(str(value).strip().lower())
    except ValueError:
        return None


def _parse_source_type(value: Union[SourceType, str]) -> Optional[SourceType]:
    if isinstance(value, SourceType):
        return value
    try:
        return SourceType(value)
    except ValueError:
        return None


class Scheduler:
    """Owns the periodic trigger tasks and the source type to frequency map."""

    def __init__(self, runner: CrawlRunner, config: Optional[SchedulerConfig] = None) -> None:
        self.runner = runner
        self.config = config or SchedulerConfig()
        self._default_frequency = Frequency(self.config.default_frequency)
        self._type_frequencies: Dict[SourceType, Frequency] = {}
        for type_name, frequency in self.config.type_frequencies.items():
            source_type = _parse_source_type(type_name)
            if source_type is None:
                logger.warning("Ignoring frequency for unknown source type", source_type=type_name)
                continue
            self._type_frequencies[source_type] = Frequency(frequency)
        self._tasks: Dict[Frequency, asyncio.Task] = {}
        self._next_run: Dict[Frequency, datetime] = {}

    # ------------------------------------------------------------------
    # Frequency map
    # ------------------------------------------------------------------

    def frequency_for(self, source_type: SourceType) -> Frequency:
        return self._type_frequencies.get(source_type, self._default_frequency)

    def source_types_for(self, frequency: Frequency) -> List[SourceType]:
        return [t for t in SourceType if self.frequency_for(t) is frequency]

    def get_type_frequencies(self) -> Dict[str, str]:
        return {t.value: self.frequency_for(t).value for t in SourceType}

    def update_source_type_frequency(self, source_type: Union[SourceType, str], frequency: Union[Frequency, str]) -> bool:
        """Move a source type to another bucket. Unknown types or frequencies are refused."""
        kind = _parse_source_type(source_type)
        bucket = _parse_frequency(frequency)
        if kind is None or bucket is None:
            logger.warning("Rejected frequency update", source_type=str(source_type), frequency=str(frequency))
            return False
        self._type_frequencies[kind] = bucket
        logger.info("Source type frequency updated", source_type=kind.value, frequency=bucket.value)
        return True

    # ------------------------------------------------------------------
    # Periodic triggers
    # ------------------------------------------------------------------

    def register_periodic_triggers(self) -> List[Frequency]:
        """Start one trigger task per frequency; the n-th waits n staggers before its first run."""
        registered: List[Frequency] = []
        now = utcnow()
        for index, frequency in enumerate(Frequency):
            if frequency in self._tasks and not self._tasks[frequency].done():
                continue
            offset = index * self.config.stagger_seconds
            self._next_run[frequency] = now + timedelta(seconds=offset)
            self._tasks[frequency] = asyncio.create_task(
                self._trigger_loop(frequency, offset), name=f"ingestcore-trigger-{frequency.value}"
            )
            registered.append(frequency)
        logger.info("Periodic triggers registered", frequencies=[f.value for f in registered])
        return registered

    async def _trigger_loop(self, frequency: Frequency, offset: float) -> None:
        await asyncio.sleep(offset)
        while True:
            self._next_run[frequency] = utcnow() + timedelta(seconds=frequency.seconds)
            try:
                await self.on_trigger(frequency)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the trigger alive; the next period tries again.
                logger.error("Scheduled crawl failed", frequency=frequency.value, error=str(e))
            await asyncio.sleep(frequency.seconds)

    async def on_trigger(self, frequency: Union[Frequency, str]) -> Optional[CrawlSummary]:
        """Crawl the due sources whose type belongs to ``frequency``."""
        bucket = _parse_frequency(frequency)
        if bucket is None:
            logger.warning("Unknown frequency trigger", frequency=str(frequency))
            return None
        source_types = self.source_types_for(bucket)
        if not source_types:
            logger.debug("No source types mapped to frequency", frequency=bucket.value)
            return None

        logger.info("Frequency trigger fired", frequency=bucket.value, source_types=[t.value for t in source_types])
        try:
            return await self.runner.run(CrawlRequest(trigger=f"scheduled:{bucket.value}", source_types=source_types))
        except CrawlerBusyError:
            logger.warning("Skipping scheduled crawl, a run is in progress", frequency=bucket.value)
            return None

    async def clear_all_triggers(self) -> int:
        """Cancel every periodic trigger. Returns how many were active."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._next_run.clear()
        if tasks:
            logger.info("Periodic triggers cleared", count=len(tasks))
        return len(tasks)

    def get_scheduled_triggers(self) -> List[Dict[str, Any]]:
        triggers = []
        for index, frequency in enumerate(Frequency):
            task = self._tasks.get(frequency)
            triggers.append(
                {
                    "frequency": frequency.value,
                    "interval": frequency.seconds,
                    "offset": index * self.config.stagger_seconds,
                    "active": task is not None and not task.done(),
                    "next_run": to_iso(self._next_run.get(frequency)),
                    "source_types": [t.value for t in self.source_types_for(frequency)],
                }
            )
        return triggers

    # ------------------------------------------------------------------
    # Manual runs
    # ------------------------------------------------------------------

    async def run_manual_crawl(
        self,
        source_types: Optional[Sequence[Union[SourceType, str]]] = None,
        source_ids: Optional[Sequence[int]] = None,
    ) -> ManualCrawlOutcome:
        """Crawl now, bypassing frequency buckets and the due check."""
        types: Optional[List[SourceType]] = None
        if source_types:
            types = []
            for value in source_types:
                kind = _parse_source_type(value)
                if kind is None:
                    return ManualCrawlOutcome(success=False, message=f"Unknown source type: {value}")
                types.append(kind)

        request = CrawlRequest(
            trigger="manual",
            source_types=types,
            source_ids=list(source_ids) if source_ids else None,
            force=True,
        )
        try:
            summary = await self.runner.run(request)
        except CrawlerBusyError as e:
            return ManualCrawlOutcome(success=False, message=str(e))
        except Exception as e:
            logger.exception("Manual crawl failed", error=str(e))
            return ManualCrawlOutcome(success=False, message=f"Crawl failed: {e}")

        if not summary.outcomes:
            message = "No matching active sources to crawl"
        else:
            message = (
                f"Crawled {summary.sources_processed} source(s), {summary.sources_failed} failed: "
                f"{summary.items_found} items found, {summary.items_processed} stored, "
                f"{summary.items_rejected} rejected"
            )
        if summary.cancelled:
            message += " (cancelled)"
        return ManualCrawlOutcome(success=summary.sources_failed == 0, message=message, summary=summary)
