"""
Tests for the in-process event bus.
"""

import pytest
from ingestcore.events import (
    ContentDeleted,
    ContentProcessed,
    ContentRejected,
    ContentStored,
    EventBus,
    PipelineEvent,
    StorageFailed,
    StorageSkipped,
)
from ingestcore.protocols import ContentItem, RejectionReason, StoreStatus


@pytest.fixture
def bus():
    return EventBus()


@pytest.mark.unit
class TestEventBus:
    """Subscription, dispatch and failure isolation."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, bus):
        seen = []

        async def on_async(event):
            seen.append(("async", event.content_id))

        bus.subscribe(ContentDeleted, lambda event: seen.append(("sync", event.content_id)))
        bus.subscribe(ContentDeleted, on_async)

        await bus.publish(ContentDeleted(content_id=7))

        assert sorted(seen) == [("async", 7), ("sync", 7)]
        assert bus.published_count == 1

    @pytest.mark.asyncio
    async def test_base_class_subscription_receives_everything(self, bus):
        seen = []
        bus.subscribe(PipelineEvent, seen.append)

        await bus.publish(ContentDeleted(content_id=1))
        await bus.publish(ContentRejected(item=ContentItem(), reason=RejectionReason.TOO_OLD))

        assert [e.name for e in seen] == ["content_deleted", "content_rejected"]

    @pytest.mark.asyncio
    async def test_handlers_only_see_their_class(self, bus):
        seen = []
        bus.subscribe(ContentStored, seen.append)

        await bus.publish(ContentDeleted(content_id=1))

        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_reach_publisher(self, bus):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ContentDeleted, broken)
        bus.subscribe(ContentDeleted, seen.append)

        await bus.publish(ContentDeleted(content_id=3))

        assert len(seen) == 1
        assert bus.handler_failures == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        seen = []
        bus.subscribe(ContentDeleted, seen.append)
        bus.subscribe(ContentDeleted, seen.append)
        bus.unsubscribe(ContentDeleted, seen.append)

        await bus.publish(ContentDeleted(content_id=3))

        assert seen == []

    @pytest.mark.asyncio
    async def test_publish_without_handlers(self, bus):
        await bus.publish(ContentDeleted(content_id=3))

        assert bus.published_count == 1
        assert bus.handler_failures == 0


@pytest.mark.unit
@pytest.mark.parametrize(
    "event, name",
    [
        (ContentStored(content_id=1, item=ContentItem(), action=StoreStatus.INSERTED), "content_stored"),
        (StorageSkipped(content_id=1, item=ContentItem()), "storage_skipped"),
        (StorageFailed(item=ContentItem(), error="disk full"), "storage_error"),
        (ContentProcessed(content_id=1, item=ContentItem(), processing_time=0.1), "content_processed"),
    ],
)
def test_event_names(event, name):
    assert event.name == name
    assert event.event_id
    assert event.timestamp.tzinfo is not None
