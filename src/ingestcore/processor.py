"""
Per-item processing pipeline.

The basic pipeline moves each raw item through a fixed sequence of gates:

    received -> filtered -> normalized -> dedup_checked -> language_checked
             -> freshness_checked -> enriched -> scored -> stored

and any gate may end the item in ``rejected`` with a reason code. The
enhanced pipeline normalizes the item and hands it to a pluggable hook.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import aiosqlite
import structlog
from langdetect import DetectorFactory, LangDetectException, detect

from ingestcore.config.config import ProcessingConfig, QualityConfig
from ingestcore.dedup.deduplicator import Deduplicator
from ingestcore.dedup.fingerprint import FingerprintGenerator, collapse_whitespace, strip_html
from ingestcore.events import ContentProcessed, ContentRejected, EventBus
from ingestcore.exceptions import DeduplicationLookupError, DuplicateFingerprintError, StorageError
from ingestcore.observability import histogram, increment
from ingestcore.protocols import (
    ContentItem,
    ContentSource,
    EnhancedProcessingHook,
    EnhancedResult,
    EnrichmentProvider,
    ProcessingResult,
    ProcessingState,
    QualityAssessment,
    RejectionReason,
    StoreStatus,
)
from ingestcore.quality.assessor import QualityScorer
from ingestcore.quality.validator import ContentValidator
from ingestcore.recovery.dead_letter import FailedItemQueue
from ingestcore.storage.content_store import ContentStore
from ingestcore.utils import parse_datetime, to_iso, utcnow

logger = structlog.get_logger(__name__)

# langdetect is randomized unless seeded.
DetectorFactory.seed = 0

InitialFilter = Callable[[ContentItem], bool]


class _Rejected(Exception):
    """Internal signal: a gate rejected the item."""

    def __init__(
        self,
        reason: RejectionReason,
        message: str,
        duplicate_of: Optional[int] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.duplicate_of = duplicate_of
        self.errors = errors or []


class ContentProcessor:
    """
    Runs raw adapter items through the processing pipeline.

    ``process`` never raises: every outcome, including unexpected faults, is
    returned as a ``ProcessingResult``.
    """

    def __init__(
        self,
        config: ProcessingConfig,
        quality_config: QualityConfig,
        deduplicator: Deduplicator,
        store: ContentStore,
        scorer: Optional[QualityScorer] = None,
        events: Optional[EventBus] = None,
        failed_items: Optional[FailedItemQueue] = None,
        enrichment: Optional[EnrichmentProvider] = None,
        enhanced_hook: Optional[EnhancedProcessingHook] = None,
        initial_filters: Sequence[InitialFilter] = (),
    ) -> None:
        self.config = config
        self.quality_config = quality_config
        self.deduplicator = deduplicator
        self.store = store
        self.scorer = scorer or QualityScorer(quality_config)
        self.events = events or store.events
        self.failed_items = failed_items
        self.enrichment = enrichment
        self.fingerprints: FingerprintGenerator = deduplicator.fingerprints
        self.validator = ContentValidator(config)
        self.initial_filters: List[InitialFilter] = list(initial_filters)
        self.enhanced_hook: EnhancedProcessingHook = enhanced_hook or QualityGatedHook(self)

    def add_filter(self, predicate: InitialFilter) -> None:
        self.initial_filters.append(predicate)

    async def process(
        self,
        raw_item: Mapping[str, Any],
        source: Optional[ContentSource] = None,
        queue_failures: bool = True,
    ) -> ProcessingResult:
        """
        Process one raw item to a terminal state.

        Items that hit a storage fault are queued for retry unless
        ``queue_failures`` is False, as when replaying the queue itself.
        """
        start = time.perf_counter()
        pipeline = self.config.pipeline
        item = ContentItem.from_raw(raw_item)
        if source is not None and not item.source_id:
            item.source_id = str(source.id)

        try:
            if pipeline == "enhanced":
                result = await self._process_enhanced(item)
            else:
                result = await self._process_basic(item, raw_item if queue_failures else None, source, start)
        except _Rejected as rejection:
            result = await self._reject(item, rejection)
        except Exception as e:
            logger.exception("Unexpected error while processing item", source_url=item.source_url, error=str(e))
            result = await self._reject(
                item, _Rejected(RejectionReason.PROCESSING_ERROR, f"Processing error: {e}", errors=[str(e)])
            )

        result.processing_time = time.perf_counter() - start
        histogram("processing_duration_seconds", result.processing_time, labels={"pipeline": pipeline})
        increment("items_processed", labels={"outcome": result.state.value})
        if result.accepted:
            await self.events.publish(
                ContentProcessed(
                    content_id=result.content_id or 0,
                    item=item,
                    processing_time=result.processing_time,
                    quality_score=item.quality_score,
                )
            )
        return result

    # ------------------------------------------------------------------
    # Basic pipeline
    # ------------------------------------------------------------------

    async def _process_basic(
        self,
        item: ContentItem,
        raw_item: Optional[Mapping[str, Any]],
        source: Optional[ContentSource],
        start: float,
    ) -> ProcessingResult:
        self._check_filters(item, source)
        self.normalize(item)
        duplicate_of = await self._check_duplicate(item, raw_item, source)
        if duplicate_of is not None:
            raise _Rejected(
                RejectionReason.DUPLICATE, f"Duplicate of content {duplicate_of}", duplicate_of=duplicate_of
            )
        self._check_language(item)
        self._check_freshness(item)
        await self.enrich(item)
        assessment = self.assess(item)

        item.processing_time = time.perf_counter() - start
        return await self._store(item, raw_item, source, assessment)

    def _check_filters(self, item: ContentItem, source: Optional[ContentSource]) -> None:
        missing = self.validator.missing_fields(item)
        if missing:
            raise _Rejected(RejectionReason.MISSING_REQUIRED_FIELD, f"Missing required field(s): {', '.join(missing)}")
        if source is not None and not source.accepts(item.type):
            raise _Rejected(RejectionReason.INITIAL_FILTER, f"Source does not accept content type '{item.type}'")
        for predicate in self.initial_filters:
            if not predicate(item):
                name = getattr(predicate, "__name__", repr(predicate))
                raise _Rejected(RejectionReason.INITIAL_FILTER, f"Rejected by filter {name}")

    def normalize(self, item: ContentItem) -> ContentItem:
        item.title = collapse_whitespace(item.title)
        item.content = item.content.strip()
        item.summary = (item.summary or "").strip()
        item.source_url = item.source_url.strip()
        item.type = (item.type or "article").strip().lower() or "article"
        item.ingestion_date = utcnow()
        # The publisher's offset is kept so the calendar date matches the source.
        published = parse_datetime(item.publish_date, keep_offset=True)
        if published is not None:
            item.publish_date = published.isoformat(timespec="seconds")
        return item

    async def _check_duplicate(
        self, item: ContentItem, raw_item: Optional[Mapping[str, Any]], source: Optional[ContentSource]
    ) -> Optional[int]:
        item.fingerprint = self.fingerprints.fingerprint(item)
        try:
            existing = await self.deduplicator.is_duplicate(item.fingerprint)
        except DeduplicationLookupError as e:
            await self._queue_failed(raw_item, "dedup_check", e, source)
            raise _Rejected(RejectionReason.STORAGE_ERROR, str(e), errors=[str(e)]) from e
        if existing is not None:
            await self._log_duplicate(existing, item)
        return existing

    def detect_language(self, item: ContentItem) -> Optional[str]:
        if item.language:
            return item.language.strip().lower()
        if not self.config.detect_language:
            return None
        text = collapse_whitespace(f"{item.title} {strip_html(item.content)}")
        try:
            return detect(text)
        except LangDetectException:
            return None

    def _check_language(self, item: ContentItem) -> None:
        language = self.detect_language(item)
        if language is None:
            return
        item.language = language
        if language.split("-")[0].split("_")[0] != self.config.language.lower():
            raise _Rejected(
                RejectionReason.LANGUAGE, f"Content language '{language}' does not match '{self.config.language}'"
            )

    def _check_freshness(self, item: ContentItem) -> None:
        published = item.published_at
        if published is None:
            return
        if utcnow() - published > timedelta(days=self.config.max_age_days):
            raise _Rejected(
                RejectionReason.TOO_OLD, f"Published {to_iso(published)}, older than {self.config.max_age_days} days"
            )

    async def enrich(self, item: ContentItem) -> None:
        """Apply the optional enrichment provider. Provider faults never reject an item."""
        provider = self.enrichment
        if provider is None:
            return
        text = collapse_whitespace(strip_html(item.content))
        # Results are applied together, so a partial failure leaves the item untouched.
        summary = item.summary
        extra: Dict[str, Any] = {}
        try:
            if not summary:
                summary = (await provider.summarize(text)).strip()
            extra["entities"] = list(await provider.extract_entities(text))
            classify = getattr(provider, "classify", None)
            if classify is not None:
                extra["categories"] = list(await classify(text))
            extract_keywords = getattr(provider, "extract_keywords", None)
            if extract_keywords is not None:
                extra["keywords"] = list(await extract_keywords(text))
        except Exception as e:
            logger.warning("Enrichment failed, continuing without it", source_url=item.source_url, error=str(e))
            return
        item.summary = summary
        item.extra.update(extra)

    def assess(self, item: ContentItem) -> QualityAssessment:
        """Score the item, rejecting it below the auto-reject threshold."""
        assessment = self.scorer.assess(item)
        item.quality_score = assessment.score
        if assessment.score < self.quality_config.auto_reject_score:
            raise _Rejected(
                RejectionReason.LOW_QUALITY,
                f"Quality score {assessment.score} below {self.quality_config.auto_reject_score}",
                errors=list(assessment.suggestions),
            )
        if assessment.score < self.quality_config.min_score:
            item.extra["quality_warning"] = f"Quality score {assessment.score} below {self.quality_config.min_score}"
            item.extra["quality_suggestions"] = list(assessment.suggestions)

        report = self.validator.validate(item)
        findings = [e for e in report.errors if not e.startswith("Missing required field")] + report.warnings
        if findings:
            item.extra["validation_warnings"] = findings
        return assessment

    async def _store(
        self,
        item: ContentItem,
        raw_item: Optional[Mapping[str, Any]],
        source: Optional[ContentSource],
        assessment: Optional[QualityAssessment],
    ) -> ProcessingResult:
        try:
            stored = await self.store.store(item)
        except DuplicateFingerprintError as e:
            if e.existing_id is not None:
                await self._log_duplicate(e.existing_id, item)
            raise _Rejected(
                RejectionReason.DUPLICATE, f"Duplicate of content {e.existing_id}", duplicate_of=e.existing_id
            ) from e
        except StorageError as e:
            await self._queue_failed(raw_item, "storage", e, source)
            raise _Rejected(RejectionReason.STORAGE_ERROR, str(e), errors=[str(e)]) from e

        if stored.status is StoreStatus.REJECTED:
            raise _Rejected(stored.reason or RejectionReason.MISSING_REQUIRED_FIELD, stored.message)

        return ProcessingResult(
            state=ProcessingState.STORED,
            content_id=stored.content_id,
            message=stored.message or f"Content {stored.status.value}",
            quality=assessment,
            stored=stored.status,
        )

    # ------------------------------------------------------------------
    # Enhanced pipeline
    # ------------------------------------------------------------------

    async def _process_enhanced(self, item: ContentItem) -> ProcessingResult:
        self.normalize(item)
        try:
            result = await self.enhanced_hook(item)
        except Exception as e:
            logger.error("Enhanced processing hook raised", source_url=item.source_url, error=str(e))
            raise _Rejected(RejectionReason.ENHANCED_PROCESSING_FAILED, str(e), errors=[str(e)]) from e

        if not result.success:
            logger.warning(
                "Enhanced processing failed", source_url=item.source_url, message=result.message, errors=result.errors
            )
            raise _Rejected(RejectionReason.ENHANCED_PROCESSING_FAILED, result.message, errors=list(result.errors))

        return ProcessingResult(
            state=ProcessingState.STORED,
            content_id=result.content_id,
            message=result.message,
            stored=result.stored if result.stored is not None else StoreStatus.INSERTED,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reject(self, item: ContentItem, rejection: _Rejected) -> ProcessingResult:
        increment("items_rejected", labels={"reason": rejection.reason.value})
        logger.info(
            "Item rejected",
            reason=rejection.reason.value,
            message=rejection.message,
            source_url=item.source_url,
        )
        await self.events.publish(
            ContentRejected(
                item=item,
                reason=rejection.reason,
                message=rejection.message,
                duplicate_of=rejection.duplicate_of,
            )
        )
        return ProcessingResult(
            state=ProcessingState.REJECTED,
            reason=rejection.reason,
            message=rejection.message,
            duplicate_of=rejection.duplicate_of,
            errors=rejection.errors,
        )

    async def _log_duplicate(self, existing_id: int, item: ContentItem) -> None:
        try:
            await self.deduplicator.log_duplicate(None, existing_id, item.fingerprint or "", item.source_url)
        except aiosqlite.Error as e:
            logger.warning("Failed to write duplicate log", duplicate_of=existing_id, error=str(e))

    async def _queue_failed(
        self,
        raw_item: Optional[Mapping[str, Any]],
        stage: str,
        error: Exception,
        source: Optional[ContentSource],
    ) -> None:
        if self.failed_items is None or raw_item is None:
            return
        payload: Dict[str, Any] = dict(raw_item)
        try:
            await self.failed_items.add_failed_item(
                payload, stage, error, source_id=source.id if source is not None else None
            )
        except aiosqlite.Error as e:
            logger.error("Failed to queue item for retry", stage=stage, error=str(e))


class QualityGatedHook:
    """
    Default enhanced-pipeline hook.

    Validates, deduplicates, enriches, scores and stores the item. Unlike the
    basic pipeline there are no language or freshness gates, and any validation
    error fails the item.
    """

    def __init__(self, processor: ContentProcessor) -> None:
        self.processor = processor

    async def __call__(self, item: ContentItem) -> EnhancedResult:
        processor = self.processor
        report = processor.validator.validate(item)
        if not report.valid:
            return EnhancedResult(success=False, message="Validation failed", errors=report.errors)
        if report.warnings:
            item.extra["validation_warnings"] = list(report.warnings)

        item.fingerprint = processor.fingerprints.fingerprint(item)
        existing = await processor.deduplicator.is_duplicate(item.fingerprint)
        if existing is not None:
            await processor._log_duplicate(existing, item)
            return EnhancedResult(success=False, message=f"Duplicate of content {existing}", errors=["duplicate"])

        await processor.enrich(item)
        try:
            processor.assess(item)
        except _Rejected as rejection:
            return EnhancedResult(success=False, message=rejection.message, errors=rejection.errors)

        try:
            stored = await processor.store.store(item)
        except DuplicateFingerprintError as e:
            # Lost a concurrent write of the same fingerprint.
            if e.existing_id is not None:
                await processor._log_duplicate(e.existing_id, item)
            return EnhancedResult(success=False, message=f"Duplicate of content {e.existing_id}", errors=["duplicate"])
        if not stored.ok:
            return EnhancedResult(success=False, message=stored.message, errors=[stored.message])
        return EnhancedResult(
            success=True, content_id=stored.content_id, message=f"Content {stored.status.value}", stored=stored.status
        )
