"""
Integration tests for crawl runs: adapters, timeouts, retries and cancellation.
"""

import asyncio

import pytest
from ingestcore.config import CrawlerConfig
from ingestcore.crawler import CrawlRequest, CrawlRunner
from ingestcore.events import CrawlCompleted
from ingestcore.exceptions import CrawlerBusyError, StorageError
from ingestcore.protocols import FetchStatus
from ingestcore.utils import to_iso, utcnow


class FlakyAdapter:
    """Fails the first ``failures`` fetches, then returns its items."""

    def __init__(self, items, failures=1):
        self.items = items
        self.failures = failures
        self.calls = 0

    async def fetch(self, source):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset by peer")
        return [dict(item) for item in self.items]


def two_items(raw_item):
    return [
        raw_item(source_url="https://news.example.com/rates-1"),
        raw_item(source_url="https://news.example.com/rates-2", title="Central Bank Signals Further Increases"),
    ]


@pytest.fixture
def make_runner(source_manager, processor, db, events, failed_items):
    def _make(**overrides):
        settings = {"fetch_timeout": 2.0, "retry_attempts": 0, "retry_failed_items": False}
        settings.update(overrides)
        return CrawlRunner(source_manager, processor, db, CrawlerConfig(**settings), events=events, failed_items=failed_items)

    return _make


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.integration
class TestCrawlRun:
    """End-to-end runs over registered sources."""

    @pytest.mark.asyncio
    async def test_successful_run(self, runner, source_manager, store, raw_item, fake_adapter_cls, recorded_events):
        source = await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))

        summary = await runner.run()

        assert summary.status == "completed"
        assert summary.sources_processed == 1
        assert summary.sources_failed == 0
        assert summary.items_found == 2
        assert summary.items_processed == 2
        assert summary.outcomes[0].new_items == 2
        assert await store.count({"source_id": source.id}) == 2

        updated = await source_manager.get_source(source.id)
        assert updated.fetch_count == 1
        assert updated.last_status is FetchStatus.SUCCESS
        assert isinstance(recorded_events[-1], CrawlCompleted)
        assert recorded_events[-1].summary["status"] == "completed"

    @pytest.mark.asyncio
    async def test_sources_that_are_not_due_are_skipped(self, runner, source_manager, raw_item, fake_adapter_cls):
        await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        adapter = fake_adapter_cls(items=two_items(raw_item))
        runner.register_adapter("feed", adapter)

        await runner.run()
        second = await runner.run()

        assert second.outcomes == []
        assert len(adapter.calls) == 1

    @pytest.mark.asyncio
    async def test_forced_run_backs_off_quiet_sources(self, runner, source_manager, raw_item, fake_adapter_cls):
        source = await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))

        await runner.run()
        forced = await runner.run(CrawlRequest(force=True))

        assert forced.items_found == 2
        assert forced.items_rejected == 2
        assert forced.outcomes[0].new_items == 0
        assert (await source_manager.get_source(source.id)).fetch_interval == 5400

    @pytest.mark.asyncio
    async def test_items_without_url_inherit_the_source_url(
        self, runner, source_manager, store, raw_item, fake_adapter_cls
    ):
        await source_manager.add_source("Wire", "feed", "https://news.example.com/only-story")
        runner.register_adapter("feed", fake_adapter_cls(items=[raw_item(source_url=None)]))

        summary = await runner.run()

        assert summary.items_processed == 1
        assert await store.get_by_source_url("https://news.example.com/only-story") is not None

    @pytest.mark.asyncio
    async def test_type_filter(self, runner, source_manager, raw_item, fake_adapter_cls):
        await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        api = await source_manager.add_source("Api", "api", "https://api.example.com")
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))
        runner.register_adapter("api", fake_adapter_cls())

        summary = await runner.run(CrawlRequest(source_types=["api"]))

        assert [o.source_id for o in summary.outcomes] == [api.id]


@pytest.mark.integration
class TestFetchFailures:
    """Failures are contained to their source."""

    @pytest.mark.asyncio
    async def test_missing_adapter(self, runner, source_manager):
        source = await source_manager.add_source("Hook", "webhook", "https://hooks.example.com")

        summary = await runner.run()

        assert summary.status == "completed"
        assert summary.sources_failed == 1
        assert "No fetch adapter registered" in summary.outcomes[0].errors[0]
        errors = await source_manager.get_source_errors(source.id)
        assert errors[0]["error_type"] == "AdapterNotFoundError"
        assert errors[0]["severity"] == "high"

    @pytest.mark.asyncio
    async def test_timeout(self, make_runner, source_manager, fake_adapter_cls, metric_value):
        runner = make_runner(fetch_timeout=0.05)
        source = await source_manager.add_source("Slow", "feed", "https://slow.example.com")
        runner.register_adapter("feed", fake_adapter_cls(delay=1.0))
        before = metric_value("ingestcore_source_fetch_failures_total", {"source_type": "feed"})

        summary = await runner.run()

        outcome = summary.outcomes[0]
        assert not outcome.success
        assert outcome.errors == ["Fetch timed out after 0.05s"]
        updated = await source_manager.get_source(source.id)
        assert updated.fetch_count == 1
        assert updated.fetch_interval == 3600
        assert updated.last_status is FetchStatus.FAILED
        assert (await source_manager.get_source_errors(source.id))[0]["error_type"] == "TimeoutError"
        assert metric_value("ingestcore_source_fetch_failures_total", {"source_type": "feed"}) == before + 1

    @pytest.mark.asyncio
    async def test_one_failing_source_does_not_stop_others(
        self, runner, source_manager, raw_item, fake_adapter_cls
    ):
        await source_manager.add_source("Broken", "api", "https://api.example.com")
        await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        runner.register_adapter("api", fake_adapter_cls(error=ValueError("malformed JSON")))
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))

        summary = await runner.run()

        assert summary.sources_processed == 1
        assert summary.sources_failed == 1
        assert summary.items_processed == 2
        assert any("malformed JSON" in e for e in summary.errors)

    @pytest.mark.asyncio
    async def test_failed_sources_are_retried(self, make_runner, source_manager, raw_item):
        runner = make_runner(retry_attempts=1)
        await source_manager.add_source("Flaky", "feed", "https://news.example.com/feed")
        adapter = FlakyAdapter(two_items(raw_item), failures=1)
        runner.register_adapter("feed", adapter)

        summary = await runner.run()

        assert adapter.calls == 2
        assert summary.sources_failed == 0
        assert summary.outcomes[0].success
        assert summary.outcomes[0].attempts == 2

    @pytest.mark.asyncio
    async def test_status_write_failure_fails_the_source(
        self, runner, source_manager, raw_item, fake_adapter_cls, monkeypatch
    ):
        await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))

        async def failing_update(*args, **kwargs):
            raise StorageError("disk I/O error")

        monkeypatch.setattr(source_manager, "update_source_status", failing_update)

        summary = await runner.run()

        assert not summary.outcomes[0].success
        assert summary.sources_failed == 1
        assert summary.sources_processed == 0
        assert any("Failed to record source status" in e for e in summary.errors)

    def test_register_adapter_requires_fetch(self, runner):
        with pytest.raises(TypeError):
            runner.register_adapter("feed", object())


@pytest.mark.integration
class TestRunControl:
    """Busy guard, cancellation and run history."""

    @pytest.mark.asyncio
    async def test_busy_guard(self, runner, source_manager, fake_adapter_cls):
        await source_manager.add_source("Slow", "feed", "https://slow.example.com")
        adapter = fake_adapter_cls(delay=0.2)
        runner.register_adapter("feed", adapter)

        task = asyncio.create_task(runner.run())
        await wait_until(lambda: bool(adapter.calls))

        with pytest.raises(CrawlerBusyError):
            await runner.run()
        assert runner.get_status()["running"]

        await task
        assert not runner.is_running

    @pytest.mark.asyncio
    async def test_cancellation_skips_queued_sources(self, make_runner, source_manager, fake_adapter_cls):
        runner = make_runner(max_concurrency=1)
        for i in range(3):
            await source_manager.add_source(f"Slow {i}", "feed", f"https://slow{i}.example.com")
        adapter = fake_adapter_cls(delay=0.2)
        runner.register_adapter("feed", adapter)

        task = asyncio.create_task(runner.run())
        await wait_until(lambda: bool(adapter.calls))
        assert runner.cancel()

        summary = await task

        assert summary.cancelled
        assert len(summary.outcomes) == 1
        assert len(adapter.calls) == 1

    def test_cancel_when_idle(self, runner):
        assert not runner.cancel()

    @pytest.mark.asyncio
    async def test_run_history_and_status(self, runner, source_manager, raw_item, fake_adapter_cls):
        await source_manager.add_source("Wire", "feed", "https://news.example.com/feed")
        runner.register_adapter("feed", fake_adapter_cls(items=two_items(raw_item)))

        summary = await runner.run(CrawlRequest(trigger="hourly"))

        history = await runner.get_run_history()
        assert len(history) == 1
        assert history[0]["run_id"] == summary.run_id
        assert history[0]["trigger"] == "hourly"
        assert history[0]["status"] == "completed"
        assert history[0]["items_processed"] == 2

        status = runner.get_status()
        assert status["last_run"]["run_id"] == summary.run_id
        assert status["adapters"] == ["feed"]
        assert [entry["event"] for entry in status["run_log"]] == ["run_started", "run_finished"]

        metrics = await source_manager.get_crawler_metrics()
        assert metrics["runs"] == 1
        assert metrics["completed_runs"] == 1


@pytest.mark.integration
class TestFailedItemReplay:
    """Replaying the failed item queue."""

    @staticmethod
    async def make_due(db):
        await db.execute("UPDATE failed_items SET next_retry_time = ?", (to_iso(utcnow()),))

    @pytest.mark.asyncio
    async def test_recovered_item_is_resolved(self, runner, failed_items, store, db, raw_item):
        item_id = await failed_items.add_failed_item(raw_item(), "storage", StorageError("disk I/O error"))
        await self.make_due(db)

        counts = await runner.retry_failed_items()

        assert counts == {"retried": 1, "recovered": 1, "failed": 0}
        assert (await failed_items.get_item(item_id)).resolved
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_failed_replay_backs_off(self, runner, failed_items, store, db, raw_item, monkeypatch):
        item_id = await failed_items.add_failed_item(raw_item(), "storage", StorageError("disk I/O error"))
        await self.make_due(db)

        async def broken_store(item):
            raise StorageError("disk I/O error", operation="write")

        monkeypatch.setattr(store, "store", broken_store)

        counts = await runner.retry_failed_items()

        assert counts == {"retried": 1, "recovered": 0, "failed": 1}
        failed = await failed_items.get_item(item_id)
        assert failed.attempt_count == 1
        assert not failed.resolved
        assert failed.next_retry_time > utcnow()
        assert (await failed_items.get_stats())["total_failures"] == 1

    @pytest.mark.asyncio
    async def test_items_not_yet_due_are_left_alone(self, runner, failed_items, raw_item):
        await failed_items.add_failed_item(raw_item(), "storage", StorageError("disk I/O error"))

        assert await runner.retry_failed_items() == {"retried": 0, "recovered": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_run_replays_queue_first(self, make_runner, failed_items, store, db, raw_item):
        runner = make_runner(retry_failed_items=True)
        await failed_items.add_failed_item(raw_item(), "storage", StorageError("disk I/O error"))
        await self.make_due(db)

        await runner.run()

        assert await store.count() == 1
