"""
Typed publish/subscribe for pipeline events.

Collaborators (admin notifications, audit logging, dashboards) subscribe to
event classes instead of polling the database. Publishers never see handler
failures.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union
from uuid import uuid4

import structlog

from ingestcore.protocols import ContentItem, RejectionReason, StoreStatus
from ingestcore.utils import utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PipelineEvent:
    """Base event. Subscribing to this class receives every event."""

    event_id: str = field(default_factory=lambda: str(uuid4()), kw_only=True)
    timestamp: datetime = field(default_factory=utcnow, kw_only=True)

    @property
    def name(self) -> str:
        return EVENT_NAMES.get(type(self), type(self).__name__)


@dataclass(frozen=True)
class ContentStored(PipelineEvent):
    content_id: int
    item: ContentItem
    action: StoreStatus


@dataclass(frozen=True)
class StorageSkipped(PipelineEvent):
    content_id: int
    item: ContentItem
    reason: str = "unchanged"


@dataclass(frozen=True)
class StorageFailed(PipelineEvent):
    item: ContentItem
    error: str
    operation: str = "store"


@dataclass(frozen=True)
class ContentDeleted(PipelineEvent):
    content_id: int


@dataclass(frozen=True)
class ContentRejected(PipelineEvent):
    item: ContentItem
    reason: RejectionReason
    message: str = ""
    duplicate_of: Optional[int] = None


@dataclass(frozen=True)
class ContentProcessed(PipelineEvent):
    content_id: int
    item: ContentItem
    processing_time: float
    quality_score: Optional[int] = None


@dataclass(frozen=True)
class CrawlCompleted(PipelineEvent):
    run_id: str
    summary: Dict[str, Any]


EVENT_NAMES: Dict[type, str] = {
    ContentStored: "content_stored",
    StorageSkipped: "storage_skipped",
    StorageFailed: "storage_error",
    ContentDeleted: "content_deleted",
    ContentRejected: "content_rejected",
    ContentProcessed: "content_processed",
    CrawlCompleted: "crawl_completed",
}

E = TypeVar("E", bound=PipelineEvent)
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """In-process event dispatcher keyed by event class."""

    def __init__(self) -> None:
        self._handlers: Dict[Type[PipelineEvent], List[Handler]] = defaultdict(list)
        self.published_count = 0
        self.handler_failures = 0

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Union[None, Awaitable[None]]]) -> None:
        """Register a sync or async handler for an event class and its subclasses."""
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[PipelineEvent], handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def handlers_for(self, event: PipelineEvent) -> List[Handler]:
        handlers: List[Handler] = []
        for cls in type(event).__mro__:
            if isinstance(cls, type) and issubclass(cls, PipelineEvent):
                handlers.extend(self._handlers.get(cls, []))
        return handlers

    async def publish(self, event: PipelineEvent) -> None:
        """Deliver an event to every matching handler."""
        self.published_count += 1
        handlers = self.handlers_for(event)
        if not handlers:
            return

        results = await asyncio.gather(*(self._invoke(h, event) for h in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                self.handler_failures += 1
                logger.error(
                    "Event handler failed",
                    event_name=event.name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(result),
                )

    async def _invoke(self, handler: Handler, event: PipelineEvent) -> None:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
