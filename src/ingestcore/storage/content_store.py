"""
Persistence of ingested content and its fingerprint index.
"""

from __future__ import annotations

import json
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, List, NoReturn, Optional, Sequence, Tuple, Union

import aiosqlite
import structlog

from ingestcore.config.config import ProcessingConfig
from ingestcore.dedup.fingerprint import FingerprintGenerator
from ingestcore.events import ContentDeleted, ContentStored, EventBus, StorageFailed, StorageSkipped
from ingestcore.exceptions import DuplicateFingerprintError, StorageError
from ingestcore.observability import increment
from ingestcore.protocols import ContentItem, ContentStatus, RejectionReason, StoreResult, StoreStatus
from ingestcore.quality.validator import ContentValidator
from ingestcore.utils import to_iso, utcnow

from .sqlite_manager import SQLiteManager

if TYPE_CHECKING:
    from ingestcore.dedup.deduplicator import Deduplicator

logger = structlog.get_logger(__name__)

ORDERABLE_COLUMNS = frozenset({"id", "created_at", "updated_at", "publish_date", "quality_score", "title"})
UPDATABLE_FIELDS = frozenset(
    {"type", "title", "content", "summary", "source_url", "source_id", "publish_date", "language", "extra", "quality_score", "status"}
)
FINGERPRINT_FIELDS = frozenset({"title", "content", "source_url", "publish_date", "source_id"})
MAX_PAGE_SIZE = 1000

QUALITY_BUCKETS: Tuple[Tuple[str, int, int], ...] = (
    ("excellent", 90, 100),
    ("good", 70, 89),
    ("average", 50, 69),
    ("poor", 30, 49),
    ("very_poor", 0, 29),
)


class ContentStore:
    """
    Writes content records and their index entries atomically.

    ``store`` is keyed on the source URL: an unchanged record is skipped, a
    changed one is updated in place, an unknown URL is inserted. The record and
    its index entry share one transaction, so a fingerprint collision leaves
    neither behind.
    """

    def __init__(
        self,
        db: SQLiteManager,
        deduplicator: Deduplicator,
        events: Optional[EventBus] = None,
        config: Optional[ProcessingConfig] = None,
        fingerprints: Optional[FingerprintGenerator] = None,
    ) -> None:
        self.db = db
        self.deduplicator = deduplicator
        self.events = events or EventBus()
        self.validator = ContentValidator(config)
        self.fingerprints = fingerprints or deduplicator.fingerprints

    async def store(self, item: ContentItem) -> StoreResult:
        """
        Persist ``item``.

        Raises:
            DuplicateFingerprintError: another record holds the item's fingerprint.
            StorageError: the database rejected the write.
        """
        missing = self.validator.missing_fields(item)
        if missing:
            logger.warning("Refusing to store item with missing fields", missing=missing, source_url=item.source_url)
            return StoreResult(
                status=StoreStatus.REJECTED,
                reason=RejectionReason.MISSING_REQUIRED_FIELD,
                message=f"Missing required field(s): {', '.join(missing)}",
            )

        item.fingerprint = item.fingerprint or self.fingerprints.fingerprint(item)
        try:
            existing = await self.get_by_source_url(item.source_url)
        except aiosqlite.Error as e:
            await self._fail(item, e, "lookup")

        if existing is not None and not self._has_changed(existing, item):
            await self.events.publish(StorageSkipped(content_id=existing.id, item=item))
            logger.debug("Content unchanged, skipping", content_id=existing.id, source_url=item.source_url)
            return StoreResult(status=StoreStatus.SKIPPED, content_id=existing.id, message="Content unchanged")

        now = utcnow()
        item.updated_at = now
        item.ingestion_date = item.ingestion_date or now
        try:
            async with self.db.transaction() as conn:
                if existing is None:
                    item.created_at = now
                    content_id = await self._insert(conn, item)
                    action = StoreStatus.INSERTED
                else:
                    content_id = existing.id
                    item.created_at = existing.created_at
                    await self._update_row(conn, content_id, item)
                    action = StoreStatus.UPDATED
                await self.deduplicator.add_to_index(content_id, item.fingerprint, item.quality_score or 0, conn=conn)
        except DuplicateFingerprintError:
            increment("storage_errors", labels={"operation": "unique_fingerprint"})
            raise
        except aiosqlite.Error as e:
            await self._fail(item, e, "write")

        item.id = content_id
        await self._record_storage_metrics(item)
        await self.events.publish(ContentStored(content_id=content_id, item=item, action=action))
        logger.info("Content stored", content_id=content_id, action=action.value, source_url=item.source_url)
        return StoreResult(status=action, content_id=content_id)

    @staticmethod
    def _has_changed(existing: ContentItem, item: ContentItem) -> bool:
        return (
            existing.fingerprint != item.fingerprint
            or (existing.summary or "") != (item.summary or "")
            or existing.type != item.type
        )

    async def _insert(self, conn: aiosqlite.Connection, item: ContentItem) -> int:
        values = self._row_values(item)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            cursor = await conn.execute(
                f"INSERT INTO ingested_content ({columns}) VALUES ({placeholders})", tuple(values.values())
            )
        except aiosqlite.IntegrityError as e:
            raise DuplicateFingerprintError(item.fingerprint or "", await self._fingerprint_owner(conn, item)) from e
        return int(cursor.lastrowid)

    async def _update_row(self, conn: aiosqlite.Connection, content_id: int, item: ContentItem) -> None:
        values = self._row_values(item)
        values.pop("created_at")
        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            await conn.execute(
                f"UPDATE ingested_content SET {assignments} WHERE id = ?", (*values.values(), content_id)
            )
        except aiosqlite.IntegrityError as e:
            raise DuplicateFingerprintError(item.fingerprint or "", await self._fingerprint_owner(conn, item)) from e

    @staticmethod
    async def _fingerprint_owner(conn: aiosqlite.Connection, item: ContentItem) -> Optional[int]:
        cursor = await conn.execute("SELECT id FROM ingested_content WHERE fingerprint = ?", (item.fingerprint,))
        row = await cursor.fetchone()
        return int(row[0]) if row else None

    @staticmethod
    def _row_values(item: ContentItem) -> Dict[str, Any]:
        return {
            "type": item.type,
            "title": item.title,
            "content": item.content,
            "summary": item.summary,
            "source_url": item.source_url,
            "source_id": item.source_id,
            "publish_date": item.publish_date,
            "ingestion_date": to_iso(item.ingestion_date),
            "fingerprint": item.fingerprint,
            "quality_score": int(item.quality_score or 0),
            "status": item.status.value,
            "language": item.language,
            "extra": json.dumps(item.extra, default=str),
            "processing_time": item.processing_time,
            "created_at": to_iso(item.created_at),
            "updated_at": to_iso(item.updated_at),
        }

    async def _fail(self, item: ContentItem, error: Exception, operation: str) -> NoReturn:
        increment("storage_errors", labels={"operation": operation})
        logger.error("Content storage failed", operation=operation, source_url=item.source_url, error=str(error))
        await self.events.publish(StorageFailed(item=item, error=str(error), operation=operation))
        raise StorageError(f"Failed to store content: {error}", operation=operation) from error

    async def _record_storage_metrics(self, item: ContentItem) -> None:
        try:
            await self.db.execute(
                """
                INSERT INTO storage_metrics (source_id, date, content_type, items, bytes)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(source_id, date, content_type) DO UPDATE SET
                    items = items + 1,
                    bytes = bytes + excluded.bytes
                """,
                (item.source_id or "", date.today().isoformat(), item.type, len(item.content.encode("utf-8"))),
            )
        except aiosqlite.Error as e:
            logger.warning("Failed to record storage metrics", error=str(e), content_type=item.type)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, content_id: int) -> Optional[ContentItem]:
        row = await self.db.fetch_one("SELECT * FROM ingested_content WHERE id = ?", (content_id,))
        return ContentItem.from_row(row) if row else None

    async def get_by_source_url(self, source_url: str) -> Optional[ContentItem]:
        row = await self.db.fetch_one(
            "SELECT * FROM ingested_content WHERE source_url = ? ORDER BY id LIMIT 1", (source_url,)
        )
        return ContentItem.from_row(row) if row else None

    async def get_by_fingerprint(self, fingerprint: str) -> Optional[ContentItem]:
        row = await self.db.fetch_one("SELECT * FROM ingested_content WHERE fingerprint = ?", (fingerprint,))
        return ContentItem.from_row(row) if row else None

    async def get_multiple(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ContentItem]:
        """
        Filtered listing. Supported filters: ``type``, ``status``, ``source_id``,
        ``min_quality`` and ``search`` (title or content substring).
        """
        where, params = self._where(filters or {})
        column = order_by if order_by in ORDERABLE_COLUMNS else "created_at"
        direction = "DESC" if descending else "ASC"
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        rows = await self.db.fetch_all(
            f"SELECT * FROM ingested_content {where} ORDER BY {column} {direction}, id {direction} LIMIT ? OFFSET ?",
            (*params, limit, max(0, int(offset))),
        )
        return [ContentItem.from_row(row) for row in rows]

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        where, params = self._where(filters or {})
        return int(await self.db.fetch_value(f"SELECT COUNT(*) FROM ingested_content {where}", params) or 0)

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[str, Sequence[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column in ("type", "source_id"):
            if filters.get(column) is not None:
                clauses.append(f"{column} = ?")
                params.append(str(filters[column]))
        if filters.get("status") is not None:
            status = filters["status"]
            clauses.append("status = ?")
            params.append(status.value if isinstance(status, ContentStatus) else str(status))
        if filters.get("min_quality") is not None:
            clauses.append("quality_score >= ?")
            params.append(int(filters["min_quality"]))
        if filters.get("search"):
            clauses.append("(title LIKE ? OR content LIKE ?)")
            pattern = f"%{filters['search']}%"
            params.extend([pattern, pattern])
        return ("WHERE " + " AND ".join(clauses) if clauses else "", params)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update(self, content_id: int, fields: Dict[str, Any]) -> bool:
        """
        Update selected fields. The fingerprint is recomputed when a fingerprinted
        field changes, and the index follows the record.

        Raises:
            DuplicateFingerprintError: the new fingerprint belongs to another record.
            ValueError: a field is not updatable.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        item = await self.get(content_id)
        if item is None:
            return False

        for name, value in fields.items():
            if name == "status":
                value = ContentStatus(value.value if isinstance(value, ContentStatus) else value)
            setattr(item, name, value)
        if FINGERPRINT_FIELDS & set(fields):
            item.fingerprint = self.fingerprints.fingerprint(item)
        item.updated_at = utcnow()

        try:
            async with self.db.transaction() as conn:
                await self._update_row(conn, content_id, item)
                await self.deduplicator.add_to_index(content_id, item.fingerprint or "", item.quality_score or 0, conn=conn)
        except aiosqlite.Error as e:
            await self._fail(item, e, "update")

        await self.events.publish(ContentStored(content_id=content_id, item=item, action=StoreStatus.UPDATED))
        logger.info("Content updated", content_id=content_id, fields=sorted(fields))
        return True

    async def set_status(self, content_id: int, status: Union[ContentStatus, str]) -> bool:
        value = status.value if isinstance(status, ContentStatus) else ContentStatus(status).value
        cursor = await self.db.execute(
            "UPDATE ingested_content SET status = ?, updated_at = ? WHERE id = ?",
            (value, to_iso(utcnow()), content_id),
        )
        return cursor.rowcount > 0

    async def delete(self, content_id: int) -> bool:
        """Remove a record, dropping its index entry first."""
        try:
            async with self.db.transaction() as conn:
                await self.deduplicator.remove_from_index(content_id, conn=conn)
                cursor = await conn.execute("DELETE FROM ingested_content WHERE id = ?", (content_id,))
                deleted = cursor.rowcount > 0
        except aiosqlite.Error as e:
            increment("storage_errors", labels={"operation": "delete"})
            raise StorageError(f"Failed to delete content {content_id}: {e}", operation="delete") from e

        if deleted:
            await self.events.publish(ContentDeleted(content_id=content_id))
            logger.info("Content deleted", content_id=content_id)
        return deleted

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_content_stats(self) -> Dict[str, Any]:
        total = await self.db.fetch_value("SELECT COUNT(*) FROM ingested_content")
        by_status = await self.db.fetch_all("SELECT status, COUNT(*) AS count FROM ingested_content GROUP BY status")
        by_type = await self.db.fetch_all("SELECT type, COUNT(*) AS count FROM ingested_content GROUP BY type")

        quality: Dict[str, int] = {}
        for label, low, high in QUALITY_BUCKETS:
            quality[label] = int(
                await self.db.fetch_value(
                    "SELECT COUNT(*) FROM ingested_content WHERE quality_score BETWEEN ? AND ?", (low, high)
                )
                or 0
            )

        recent = await self.db.fetch_all(
            "SELECT id, title, type, quality_score, created_at FROM ingested_content ORDER BY created_at DESC, id DESC LIMIT 5"
        )
        return {
            "total": int(total or 0),
            "by_status": {row["status"]: row["count"] for row in by_status},
            "by_type": {row["type"]: row["count"] for row in by_type},
            "quality_distribution": quality,
            "recent": recent,
        }
