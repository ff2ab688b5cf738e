"""
Core contracts and dataclasses for the IngestCore content pipeline.

Data flow:
- the Scheduler asks the SourceManager which sources are due
- a FetchAdapter per source type yields raw items for each due source
- the ContentProcessor normalizes, deduplicates, scores and stores each item
- the SourceManager records the outcome and adapts the next fetch interval
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, runtime_checkable

from ingestcore.utils import from_iso, parse_datetime, utcnow

# ============================================================================
# Enums and Constants
# ============================================================================


class SourceType(Enum):
    """Kinds of content sources, each served by one fetch adapter."""

    FEED = "feed"
    API = "api"
    SCRAPE = "scrape"
    WEBHOOK = "webhook"

    @classmethod
    def _missing_(cls, value: object) -> Optional[SourceType]:
        aliases = {"rss": cls.FEED, "atom": cls.FEED, "scraper": cls.SCRAPE}
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in aliases:
                return aliases[lowered]
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class Frequency(Enum):
    """Periodic trigger buckets, in registration order."""

    HOURLY = "hourly"
    TWICE_DAILY = "twicedaily"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def seconds(self) -> int:
        return FREQUENCY_SECONDS[self]


FREQUENCY_SECONDS: Dict[Frequency, int] = {
    Frequency.HOURLY: 3600,
    Frequency.TWICE_DAILY: 43200,
    Frequency.DAILY: 86400,
    Frequency.WEEKLY: 604800,
}


class FetchStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ContentStatus(Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    REJECTED = "rejected"


class ProcessingState(Enum):
    """States of the per-item processing state machine."""

    RECEIVED = "received"
    FILTERED = "filtered"
    NORMALIZED = "normalized"
    DEDUP_CHECKED = "dedup_checked"
    LANGUAGE_CHECKED = "language_checked"
    FRESHNESS_CHECKED = "freshness_checked"
    ENRICHED = "enriched"
    SCORED = "scored"
    STORED = "stored"
    REJECTED = "rejected"


class RejectionReason(Enum):
    """Reason codes carried by rejected items."""

    INITIAL_FILTER = "initial_filter"
    DUPLICATE = "duplicate"
    LANGUAGE = "language"
    TOO_OLD = "too_old"
    ENHANCED_PROCESSING_FAILED = "enhanced_processing_failed"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    LOW_QUALITY = "low_quality"
    STORAGE_ERROR = "storage_error"
    PROCESSING_ERROR = "processing_error"


class DuplicateResolution(Enum):
    KEPT_NEW = "kept_new"
    KEPT_EXISTING = "kept_existing"
    IGNORED = "ignored"
    MANUALLY_RESOLVED = "manually_resolved"


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StoreStatus(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"
    REJECTED = "rejected"


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass
class ContentSource:
    """A content source and its fetch state."""

    id: int
    name: str
    type: SourceType
    url: str
    config: Dict[str, Any] = field(default_factory=dict)
    content_types: Set[str] = field(default_factory=set)
    active: bool = True
    last_fetch: Optional[datetime] = None
    last_status: Optional[FetchStatus] = None
    fetch_interval: int = 3600
    min_interval: int = 1800
    max_interval: int = 86400
    fetch_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def next_fetch_at(self) -> Optional[datetime]:
        if self.last_fetch is None:
            return None
        return self.last_fetch + timedelta(seconds=self.fetch_interval)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """A source is due once its interval has elapsed since the last fetch."""
        if not self.active:
            return False
        next_fetch = self.next_fetch_at()
        if next_fetch is None:
            return True
        return (now or utcnow()) >= next_fetch

    def accepts(self, content_type: str) -> bool:
        return not self.content_types or content_type in self.content_types


_ITEM_FIELDS = (
    "type",
    "title",
    "content",
    "summary",
    "source_url",
    "source_id",
    "publish_date",
    "language",
)


@dataclass
class ContentItem:
    """One piece of ingested content, from raw adapter output to stored record."""

    type: str = "article"
    title: str = ""
    content: str = ""
    summary: str = ""
    source_url: str = ""
    source_id: Optional[str] = None
    publish_date: Optional[str] = None
    language: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    fingerprint: Optional[str] = None
    quality_score: Optional[int] = None
    status: ContentStatus = ContentStatus.PENDING
    ingestion_date: Optional[datetime] = None
    processing_time: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> ContentItem:
        """Build an item from an adapter dict; unknown keys land in ``extra``."""
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = dict(raw.get("extra") or {})
        for key, value in raw.items():
            if key in _ITEM_FIELDS:
                values[key] = value
            elif key != "extra":
                extra[key] = value

        for text_field in ("title", "content", "summary", "source_url"):
            if values.get(text_field) is None:
                values.pop(text_field, None)
            else:
                values[text_field] = str(values[text_field])
        if values.get("source_id") is not None:
            values["source_id"] = str(values["source_id"])
        if isinstance(values.get("publish_date"), datetime):
            values["publish_date"] = values["publish_date"].isoformat()
        elif values.get("publish_date") is not None:
            values["publish_date"] = str(values["publish_date"])
        if not values.get("type"):
            values.pop("type", None)
        return cls(extra=extra, **values)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ContentItem:
        """Rebuild a stored item from an ``ingested_content`` row."""
        extra = row.get("extra") or "{}"
        return cls(
            id=row.get("id"),
            type=row.get("type") or "article",
            title=row.get("title") or "",
            content=row.get("content") or "",
            summary=row.get("summary") or "",
            source_url=row.get("source_url") or "",
            source_id=row.get("source_id"),
            publish_date=row.get("publish_date"),
            language=row.get("language"),
            extra=json.loads(extra) if isinstance(extra, str) else dict(extra),
            fingerprint=row.get("fingerprint"),
            quality_score=row.get("quality_score"),
            status=ContentStatus(row.get("status") or ContentStatus.PENDING.value),
            ingestion_date=from_iso(row.get("ingestion_date")),
            processing_time=row.get("processing_time"),
            created_at=from_iso(row.get("created_at")),
            updated_at=from_iso(row.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "source_url": self.source_url,
            "source_id": self.source_id,
            "publish_date": self.publish_date,
            "language": self.language,
            "fingerprint": self.fingerprint,
            "quality_score": self.quality_score,
            "status": self.status.value,
            "extra": self.extra,
        }

    @property
    def published_at(self) -> Optional[datetime]:
        return parse_datetime(self.publish_date)


@dataclass(frozen=True)
class ContentIndexEntry:
    content_id: int
    fingerprint: str
    quality_score: int


@dataclass
class DuplicateLogEntry:
    """A fingerprint collision awaiting (or carrying) a resolution."""

    id: int
    content_id: Optional[int]
    duplicate_id: int
    fingerprint: str
    candidate_url: Optional[str] = None
    resolution: Optional[DuplicateResolution] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.resolution is None


@dataclass
class DuplicateCandidate:
    """A stored record that may duplicate an incoming item."""

    content_id: int
    title: str
    source_url: str
    type: str
    quality_score: Optional[int]
    created_at: Optional[datetime]
    exact: bool = False
    matched_terms: int = 0


@dataclass
class DuplicateGroup:
    """All log entries that share one fingerprint."""

    fingerprint: str
    kept_content_id: int
    kept_title: Optional[str]
    kept_url: Optional[str]
    kept_quality_score: Optional[int]
    entries: List[DuplicateLogEntry] = field(default_factory=list)

    @property
    def pending_count(self) -> int:
        return sum(1 for entry in self.entries if entry.is_pending)


@dataclass
class DuplicateReport:
    status: str
    message: str
    groups: List[DuplicateGroup] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(group.entries) for group in self.groups)


@dataclass
class SourceMetric:
    """Per source, per day accumulated counters."""

    source_id: int
    date: str
    items_found: int = 0
    items_stored: int = 0
    items_rejected: int = 0
    processing_time: float = 0.0
    error_count: int = 0


@dataclass
class FetchStats:
    """Outcome of one fetch attempt, fed back into the interval controller."""

    items_found: int = 0
    new_items: int = 0
    items_rejected: int = 0
    processing_time: float = 0.0
    error_count: int = 0


@dataclass
class RuleResult:
    points: float
    max_points: float

    @property
    def passed(self) -> bool:
        return self.points >= self.max_points


@dataclass
class CategoryScore:
    name: str
    weight: int
    points: float
    max_points: float
    rules: Dict[str, RuleResult] = field(default_factory=dict)

    @property
    def percentage(self) -> int:
        if self.max_points <= 0:
            return 0
        return int(round(self.points / self.max_points * 100))


@dataclass
class QualityAssessment:
    score: int
    category: str
    categories: Dict[str, CategoryScore] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)

    def breakdown(self) -> Dict[str, Any]:
        return {
            name: {
                "percentage": cat.percentage,
                "weight": cat.weight,
                "rules": {rule: res.points for rule, res in cat.rules.items()},
            }
            for name, cat in self.categories.items()
        }


@dataclass
class StoreResult:
    status: StoreStatus
    content_id: Optional[int] = None
    reason: Optional[RejectionReason] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not StoreStatus.REJECTED


@dataclass
class EnhancedResult:
    """Structured result returned by an enhanced processing hook."""

    success: bool
    content_id: Optional[int] = None
    message: str = ""
    errors: List[str] = field(default_factory=list)
    # None means the hook does not report how the item was written.
    stored: Optional[StoreStatus] = None


@dataclass
class ProcessingResult:
    """Terminal outcome of one item through the processor."""

    state: ProcessingState
    content_id: Optional[int] = None
    reason: Optional[RejectionReason] = None
    message: str = ""
    quality: Optional[QualityAssessment] = None
    duplicate_of: Optional[int] = None
    processing_time: float = 0.0
    errors: List[str] = field(default_factory=list)
    stored: Optional[StoreStatus] = None

    @property
    def accepted(self) -> bool:
        return self.state is ProcessingState.STORED

    @property
    def is_new(self) -> bool:
        return self.stored in (StoreStatus.INSERTED, StoreStatus.UPDATED)


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class FetchAdapter(Protocol):
    """Fetches raw items for one source; raises on failure."""

    async def fetch(self, source: ContentSource) -> List[Dict[str, Any]]: ...


@runtime_checkable
class EnrichmentProvider(Protocol):
    """Optional summarization and entity extraction capability."""

    async def summarize(self, text: str) -> str: ...

    async def extract_entities(self, text: str) -> List[str]: ...


class EnhancedProcessingHook(Protocol):
    """Takes over normalize-to-store for the enhanced pipeline."""

    async def __call__(self, item: ContentItem) -> EnhancedResult: ...
