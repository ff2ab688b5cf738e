"""
Tests for frequency triggers and manual crawls.
"""

import asyncio

import pytest
from ingestcore.config import SchedulerConfig
from ingestcore.crawler import CrawlSummary
from ingestcore.exceptions import CrawlerBusyError
from ingestcore.protocols import Frequency, SourceType
from ingestcore.scheduler import Scheduler


class RecordingRunner:
    """Stands in for the crawl runner and records every request."""

    def __init__(self, busy=False):
        self.busy = busy
        self.requests = []

    async def run(self, request=None):
        if self.busy:
            raise CrawlerBusyError("Crawler is already running")
        self.requests.append(request)
        return CrawlSummary(run_id=f"run-{len(self.requests)}", trigger=request.trigger, status="completed")


@pytest.fixture
def recording_runner():
    return RecordingRunner()


@pytest.mark.unit
class TestFrequencyMap:
    def test_default_buckets(self, recording_runner):
        scheduler = Scheduler(recording_runner)

        assert scheduler.source_types_for(Frequency.HOURLY) == [SourceType.FEED, SourceType.API]
        assert scheduler.source_types_for(Frequency.DAILY) == [SourceType.SCRAPE, SourceType.WEBHOOK]
        assert scheduler.source_types_for(Frequency.WEEKLY) == []

    def test_update_frequency(self, recording_runner):
        scheduler = Scheduler(recording_runner)

        assert scheduler.update_source_type_frequency("scrape", "weekly")
        assert scheduler.frequency_for(SourceType.SCRAPE) is Frequency.WEEKLY
        assert scheduler.get_type_frequencies()["scrape"] == "weekly"

    @pytest.mark.parametrize("source_type, frequency", [("fax", "daily"), ("feed", "monthly")])
    def test_update_frequency_refuses_unknown_values(self, recording_runner, source_type, frequency):
        scheduler = Scheduler(recording_runner)

        assert not scheduler.update_source_type_frequency(source_type, frequency)
        assert scheduler.frequency_for(SourceType.FEED) is Frequency.HOURLY

    def test_unmapped_types_use_default_bucket(self, recording_runner):
        config = SchedulerConfig(type_frequencies={"feed": "hourly"}, default_frequency="twicedaily")
        scheduler = Scheduler(recording_runner, config)

        assert scheduler.frequency_for(SourceType.API) is Frequency.TWICE_DAILY


@pytest.mark.unit
class TestTriggers:
    @pytest.mark.asyncio
    async def test_trigger_crawls_its_source_types(self, recording_runner):
        scheduler = Scheduler(recording_runner)

        summary = await scheduler.on_trigger("hourly")

        assert summary.status == "completed"
        request = recording_runner.requests[0]
        assert request.trigger == "scheduled:hourly"
        assert request.source_types == [SourceType.FEED, SourceType.API]
        assert not request.force

    @pytest.mark.asyncio
    async def test_trigger_without_source_types(self, recording_runner):
        scheduler = Scheduler(recording_runner)

        assert await scheduler.on_trigger(Frequency.WEEKLY) is None
        assert await scheduler.on_trigger("fortnightly") is None
        assert recording_runner.requests == []

    @pytest.mark.asyncio
    async def test_trigger_while_busy(self):
        scheduler = Scheduler(RecordingRunner(busy=True))

        assert await scheduler.on_trigger("daily") is None

    @pytest.mark.asyncio
    async def test_register_and_clear_staggered_triggers(self, recording_runner):
        scheduler = Scheduler(recording_runner, SchedulerConfig(stagger_seconds=600))

        registered = scheduler.register_periodic_triggers()
        # Registering twice does not duplicate tasks.
        assert scheduler.register_periodic_triggers() == []

        triggers = scheduler.get_scheduled_triggers()
        assert registered == list(Frequency)
        assert [t["offset"] for t in triggers] == [0, 600, 1200, 1800]
        assert [t["interval"] for t in triggers] == [3600, 43200, 86400, 604800]
        assert all(t["active"] for t in triggers)
        assert all(t["next_run"] for t in triggers)

        # The hourly bucket has no offset and fires right away.
        await asyncio.sleep(0.05)
        assert recording_runner.requests[0].trigger == "scheduled:hourly"

        assert await scheduler.clear_all_triggers() == 4
        assert not any(t["active"] for t in scheduler.get_scheduled_triggers())
        assert await scheduler.clear_all_triggers() == 0


@pytest.mark.integration
class TestManualCrawl:
    @pytest.mark.asyncio
    async def test_manual_crawl_ignores_due_check(self, runner, source_manager, raw_item, fake_adapter_cls):
        source = await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        adapter = fake_adapter_cls(items=[raw_item()])
        runner.register_adapter("feed", adapter)
        scheduler = Scheduler(runner)

        first = await scheduler.run_manual_crawl(["feed"])
        second = await scheduler.run_manual_crawl(source_ids=[source.id])

        assert first.success
        assert "1 stored" in first.message
        assert second.success
        assert second.summary.items_rejected == 1
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_manual_crawl_unknown_type(self, runner):
        outcome = await Scheduler(runner).run_manual_crawl(["carrier-pigeon"])

        assert not outcome.success
        assert outcome.message == "Unknown source type: carrier-pigeon"
        assert outcome.summary is None

    @pytest.mark.asyncio
    async def test_manual_crawl_without_sources(self, runner):
        outcome = await Scheduler(runner).run_manual_crawl()

        assert outcome.success
        assert outcome.message == "No matching active sources to crawl"

    @pytest.mark.asyncio
    async def test_manual_crawl_reports_failures(self, runner, source_manager):
        await source_manager.add_source("Hook", "webhook", "https://hooks.example.com")

        outcome = await Scheduler(runner).run_manual_crawl()

        assert not outcome.success
        assert "1 failed" in outcome.message

    @pytest.mark.asyncio
    async def test_manual_crawl_while_busy(self):
        outcome = await Scheduler(RecordingRunner(busy=True)).run_manual_crawl()

        assert not outcome.success
        assert "already running" in outcome.message
