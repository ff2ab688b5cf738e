"""
Integration tests for content persistence and its fingerprint index.
"""

import pytest
from ingestcore.events import ContentDeleted, ContentStored, StorageSkipped
from ingestcore.exceptions import DuplicateFingerprintError
from ingestcore.protocols import ContentItem, ContentStatus, RejectionReason, StoreStatus


def make_item(raw_item, **overrides) -> ContentItem:
    return ContentItem.from_raw(raw_item(**overrides))


async def index_size(db) -> int:
    return await db.fetch_value("SELECT COUNT(*) FROM content_index")


@pytest.mark.integration
class TestStore:
    """Insert, update and skip semantics of ``store``."""

    @pytest.mark.asyncio
    async def test_insert(self, store, db, raw_item, recorded_events):
        result = await store.store(make_item(raw_item, source_id=3))

        assert result.ok
        assert result.status is StoreStatus.INSERTED
        stored = await store.get(result.content_id)
        assert stored.title == "Central Bank Raises Interest Rates"
        assert stored.source_id == "3"
        assert stored.fingerprint and len(stored.fingerprint) == 64
        assert stored.status is ContentStatus.PENDING
        assert await index_size(db) == 1
        assert [type(e) for e in recorded_events] == [ContentStored]
        assert recorded_events[0].action is StoreStatus.INSERTED

    @pytest.mark.asyncio
    async def test_unchanged_item_is_skipped(self, store, raw_item, recorded_events):
        first = await store.store(make_item(raw_item))
        second = await store.store(make_item(raw_item))

        assert second.status is StoreStatus.SKIPPED
        assert second.content_id == first.content_id
        assert isinstance(recorded_events[-1], StorageSkipped)
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_changed_item_is_updated_in_place(self, store, db, raw_item):
        first = await store.store(make_item(raw_item))
        second = await store.store(make_item(raw_item, title="Central Bank Raises Rates Again"))

        assert second.status is StoreStatus.UPDATED
        assert second.content_id == first.content_id
        stored = await store.get(first.content_id)
        assert stored.title == "Central Bank Raises Rates Again"
        index = await db.fetch_one("SELECT fingerprint FROM content_index WHERE content_id = ?", (first.content_id,))
        assert index["fingerprint"] == stored.fingerprint

    @pytest.mark.asyncio
    async def test_summary_change_counts_as_change(self, store, raw_item):
        await store.store(make_item(raw_item))
        result = await store.store(make_item(raw_item, summary="A different summary of the rate decision."))

        assert result.status is StoreStatus.UPDATED

    @pytest.mark.asyncio
    async def test_missing_title_is_rejected_without_writes(self, store, db, raw_item):
        result = await store.store(make_item(raw_item, title=None))

        assert not result.ok
        assert result.status is StoreStatus.REJECTED
        assert result.reason is RejectionReason.MISSING_REQUIRED_FIELD
        assert "title" in result.message
        assert await store.count() == 0
        assert await index_size(db) == 0

    @pytest.mark.asyncio
    async def test_fingerprint_collision_leaves_nothing_behind(self, store, db, raw_item):
        first = await store.store(make_item(raw_item))
        # Same normalized URL and fields, different raw URL.
        variant = make_item(raw_item, source_url="https://news.example.com/2024/rates?utm_source=rss")

        with pytest.raises(DuplicateFingerprintError) as exc_info:
            await store.store(variant)

        assert exc_info.value.existing_id == first.content_id
        assert await store.count() == 1
        assert await index_size(db) == 1


@pytest.mark.integration
class TestQueries:
    @pytest.mark.asyncio
    async def test_lookups(self, store, raw_item):
        result = await store.store(make_item(raw_item))
        stored = await store.get(result.content_id)

        assert (await store.get_by_source_url("https://news.example.com/2024/rates")).id == result.content_id
        assert (await store.get_by_fingerprint(stored.fingerprint)).id == result.content_id
        assert await store.get(999) is None

    @pytest.mark.asyncio
    async def test_get_multiple_filters_and_limits(self, store, raw_item):
        for i in range(3):
            await store.store(make_item(raw_item, source_url=f"https://news.example.com/{i}", title=f"Rates story {i}"))
        await store.store(make_item(raw_item, type="event", source_url="https://events.example.com/1"))

        assert len(await store.get_multiple()) == 4
        assert len(await store.get_multiple(filters={"type": "news"})) == 3
        assert len(await store.get_multiple(limit=0)) == 1
        assert len(await store.get_multiple(limit=5000)) == 4
        assert [i.title for i in await store.get_multiple(filters={"search": "story 1"})] == ["Rates story 1"]
        ascending = await store.get_multiple(order_by="id", descending=False)
        assert [i.id for i in ascending] == sorted(i.id for i in ascending)
        assert await store.count({"type": "event"}) == 1

    @pytest.mark.asyncio
    async def test_content_stats(self, store, raw_item):
        item = make_item(raw_item)
        item.quality_score = 75
        await store.store(item)

        stats = await store.get_content_stats()

        assert stats["total"] == 1
        assert stats["by_type"] == {"news": 1}
        assert stats["by_status"] == {"pending": 1}
        assert stats["quality_distribution"]["good"] == 1
        assert len(stats["recent"]) == 1


@pytest.mark.integration
class TestMutations:
    @pytest.mark.asyncio
    async def test_update_recomputes_fingerprint(self, store, db, raw_item):
        result = await store.store(make_item(raw_item))
        before = await store.get(result.content_id)

        assert await store.update(result.content_id, {"title": "New Headline For The Story"})

        after = await store.get(result.content_id)
        assert after.fingerprint != before.fingerprint
        index = await db.fetch_value("SELECT fingerprint FROM content_index WHERE content_id = ?", (result.content_id,))
        assert index == after.fingerprint

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store, raw_item):
        result = await store.store(make_item(raw_item))

        with pytest.raises(ValueError):
            await store.update(result.content_id, {"fingerprint": "abc"})

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store):
        assert not await store.update(42, {"title": "Nothing here"})

    @pytest.mark.asyncio
    async def test_set_status(self, store, raw_item):
        result = await store.store(make_item(raw_item))

        assert await store.set_status(result.content_id, "published")
        assert (await store.get(result.content_id)).status is ContentStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_delete_drops_index_entry(self, store, db, raw_item, recorded_events):
        result = await store.store(make_item(raw_item))

        assert await store.delete(result.content_id)
        assert await store.get(result.content_id) is None
        assert await index_size(db) == 0
        assert isinstance(recorded_events[-1], ContentDeleted)
        assert not await store.delete(result.content_id)
