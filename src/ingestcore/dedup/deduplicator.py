"""
Fingerprint index and duplicate bookkeeping.

Exact detection goes through the unique ``content_index.fingerprint`` column,
so concurrent writers of the same fingerprint are serialized by SQLite: the
first insert wins and every later one raises ``IntegrityError``. Fuzzy title
matching is a fallback for near-duplicates that normalize differently.
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import aiosqlite
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ingestcore.config.config import DedupConfig
from ingestcore.exceptions import DeduplicationLookupError, DuplicateFingerprintError, DuplicateLogNotFoundError, StorageError
from ingestcore.observability import increment
from ingestcore.protocols import (
    ContentItem,
    DuplicateCandidate,
    DuplicateGroup,
    DuplicateLogEntry,
    DuplicateReport,
    DuplicateResolution,
)
from ingestcore.storage.sqlite_manager import SQLiteManager
from ingestcore.utils import from_iso, to_iso, utcnow

from .fingerprint import FingerprintGenerator

logger = structlog.get_logger(__name__)

STOPWORDS = frozenset(
    "a an the and or but is are was were in on at to for with by about like from of that this these those".split()
)
_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


def extract_title_terms(title: str) -> List[str]:
    """Significant lowercase title terms, in order, without repeats."""
    terms: List[str] = []
    for term in _NON_WORD.sub(" ", (title or "").lower()).split():
        if len(term) > 2 and term not in STOPWORDS and term not in terms:
            terms.append(term)
    return terms


class Deduplicator:
    """Checks and maintains the fingerprint index and the duplicate log."""

    def __init__(
        self,
        db: SQLiteManager,
        config: Optional[DedupConfig] = None,
        fingerprints: Optional[FingerprintGenerator] = None,
    ) -> None:
        self.db = db
        self.config = config or DedupConfig()
        self.fingerprints = fingerprints or FingerprintGenerator()

    # ------------------------------------------------------------------
    # Exact index
    # ------------------------------------------------------------------

    async def is_duplicate(self, fingerprint: str, exclude_id: Optional[int] = None) -> Optional[int]:
        """
        Return the id of the stored content holding ``fingerprint``, or None.

        Raises:
            DeduplicationLookupError: the index could not be queried. Callers
                must not treat this as "unique".
        """
        sql = "SELECT content_id FROM content_index WHERE fingerprint = ?"
        params: List[Any] = [fingerprint]
        if exclude_id is not None:
            sql += " AND content_id != ?"
            params.append(exclude_id)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.lookup_retries),
                wait=wait_exponential(multiplier=0.05, max=1.0),
                retry=retry_if_exception_type(aiosqlite.OperationalError),
                reraise=True,
            ):
                with attempt:
                    row = await self.db.fetch_one(sql, params)
        except (aiosqlite.Error, ValueError) as e:
            logger.error("Fingerprint lookup failed", fingerprint=fingerprint[:16], error=str(e))
            increment("storage_errors", labels={"operation": "dedup_lookup"})
            raise DeduplicationLookupError(f"Fingerprint lookup failed: {e}", fingerprint) from e

        return int(row["content_id"]) if row else None

    async def add_to_index(
        self,
        content_id: int,
        fingerprint: str,
        quality_score: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> None:
        """
        Upsert the index entry of ``content_id``.

        When ``conn`` is given the write joins the caller's transaction.

        Raises:
            DuplicateFingerprintError: another record already holds the fingerprint.
        """
        now = to_iso(utcnow())
        sql = """
            INSERT INTO content_index (content_id, fingerprint, quality_score, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(content_id) DO UPDATE SET
                fingerprint = excluded.fingerprint,
                quality_score = excluded.quality_score,
                updated_at = excluded.updated_at
        """
        params = (content_id, fingerprint, int(quality_score), now, now)
        try:
            if conn is not None:
                await conn.execute(sql, params)
            else:
                await self.db.execute(sql, params)
        except aiosqlite.IntegrityError as e:
            existing = await self._index_owner(fingerprint, conn)
            raise DuplicateFingerprintError(fingerprint, existing) from e

    async def _index_owner(self, fingerprint: str, conn: Optional[aiosqlite.Connection]) -> Optional[int]:
        sql = "SELECT content_id FROM content_index WHERE fingerprint = ?"
        if conn is not None:
            cursor = await conn.execute(sql, (fingerprint,))
            row = await cursor.fetchone()
            return int(row[0]) if row else None
        value = await self.db.fetch_value(sql, (fingerprint,))
        return int(value) if value is not None else None

    async def remove_from_index(self, content_id: int, conn: Optional[aiosqlite.Connection] = None) -> bool:
        sql = "DELETE FROM content_index WHERE content_id = ?"
        if conn is not None:
            cursor = await conn.execute(sql, (content_id,))
        else:
            cursor = await self.db.execute(sql, (content_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Near-duplicates
    # ------------------------------------------------------------------

    async def find_potential_duplicates(
        self,
        item: ContentItem,
        limit: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> List[DuplicateCandidate]:
        """Stored records whose titles share significant terms with ``item``, newest first."""
        limit = limit or self.config.candidate_limit
        terms = extract_title_terms(item.title)
        if not terms:
            return []

        clauses = " OR ".join("title LIKE ?" for _ in terms)
        params: List[Any] = [f"%{term}%" for term in terms]
        sql = (
            "SELECT id, title, source_url, type, quality_score, created_at "
            f"FROM ingested_content WHERE ({clauses})"
        )
        if item.type:
            sql += " AND type = ?"
            params.append(item.type)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = await self.db.fetch_all(sql, params)
        candidates = []
        for row in rows:
            lowered = (row["title"] or "").lower()
            candidates.append(
                DuplicateCandidate(
                    content_id=row["id"],
                    title=row["title"],
                    source_url=row["source_url"],
                    type=row["type"],
                    quality_score=row["quality_score"],
                    created_at=from_iso(row["created_at"]),
                    matched_terms=sum(1 for term in terms if term in lowered),
                )
            )
        return candidates

    async def find_similar_content(self, item: ContentItem, limit: Optional[int] = None) -> List[DuplicateCandidate]:
        """Exact fingerprint match first; fuzzy title matches only on a miss."""
        limit = limit or self.config.candidate_limit
        fingerprint = item.fingerprint or self.fingerprints.fingerprint(item)
        existing = await self.is_duplicate(fingerprint, exclude_id=item.id)
        if existing is not None:
            row = await self.db.fetch_one(
                "SELECT id, title, source_url, type, quality_score, created_at FROM ingested_content WHERE id = ?",
                (existing,),
            )
            if row:
                return [
                    DuplicateCandidate(
                        content_id=row["id"],
                        title=row["title"],
                        source_url=row["source_url"],
                        type=row["type"],
                        quality_score=row["quality_score"],
                        created_at=from_iso(row["created_at"]),
                        exact=True,
                    )
                ]
        return await self.find_potential_duplicates(item, limit=limit, exclude_id=item.id)

    # ------------------------------------------------------------------
    # Duplicate log
    # ------------------------------------------------------------------

    async def log_duplicate(
        self,
        content_id: Optional[int],
        duplicate_id: int,
        fingerprint: str,
        candidate_url: Optional[str] = None,
    ) -> int:
        """Record a collision. The entry starts pending (no resolution)."""
        cursor = await self.db.execute(
            """
            INSERT INTO duplicate_log (content_id, duplicate_id, fingerprint, candidate_url, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (content_id, duplicate_id, fingerprint, candidate_url, to_iso(utcnow())),
        )
        increment("duplicates_detected")
        logger.info(
            "Duplicate logged",
            log_id=cursor.lastrowid,
            duplicate_of=duplicate_id,
            fingerprint=fingerprint[:16],
            candidate_url=candidate_url,
        )
        return int(cursor.lastrowid)

    async def get_duplicate_log(self, log_id: int) -> Optional[DuplicateLogEntry]:
        row = await self.db.fetch_one("SELECT * FROM duplicate_log WHERE id = ?", (log_id,))
        return self._row_to_log_entry(row) if row else None

    async def get_duplicate_details(self, content_id: int) -> Optional[Dict[str, Any]]:
        """The stored record a duplicate points at, with its log history."""
        row = await self.db.fetch_one(
            """
            SELECT c.id, c.title, c.source_url, c.type, c.status, c.quality_score, c.created_at, i.fingerprint
            FROM ingested_content c LEFT JOIN content_index i ON i.content_id = c.id
            WHERE c.id = ?
            """,
            (content_id,),
        )
        if not row:
            return None
        log_rows = await self.db.fetch_all(
            "SELECT * FROM duplicate_log WHERE duplicate_id = ? ORDER BY created_at DESC, id DESC",
            (content_id,),
        )
        row["duplicates"] = [self._row_to_log_entry(r) for r in log_rows]
        return row

    async def resolve_duplicate(self, log_id: int, resolution: Union[DuplicateResolution, str]) -> bool:
        """
        Set the resolution of a pending log entry.

        Returns False when the entry was already resolved; a resolution is
        only ever written once.

        Raises:
            ValueError: unknown resolution value.
            DuplicateLogNotFoundError: no entry with ``log_id``.
        """
        resolution = DuplicateResolution(resolution)
        cursor = await self.db.execute(
            "UPDATE duplicate_log SET resolution = ?, resolved_at = ? WHERE id = ? AND resolution IS NULL",
            (resolution.value, to_iso(utcnow()), log_id),
        )
        if cursor.rowcount > 0:
            logger.info("Duplicate resolved", log_id=log_id, resolution=resolution.value)
            return True

        exists = await self.db.fetch_value("SELECT 1 FROM duplicate_log WHERE id = ?", (log_id,))
        if not exists:
            raise DuplicateLogNotFoundError(f"Duplicate log entry {log_id} not found")
        logger.warning("Duplicate already resolved", log_id=log_id)
        return False

    async def generate_duplicate_report(
        self,
        days: Optional[int] = None,
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> DuplicateReport:
        """
        Duplicate log entries of the last ``days`` grouped by fingerprint.

        ``status`` is None/"all", "pending", "resolved" or a resolution value.
        """
        days = days or self.config.report_days
        limit = limit or self.config.report_limit
        since = to_iso(utcnow() - timedelta(days=days))

        sql = """
            SELECT d.*, c.title AS kept_title, c.source_url AS kept_url, c.quality_score AS kept_quality_score
            FROM duplicate_log d
            LEFT JOIN ingested_content c ON c.id = d.duplicate_id
            WHERE d.created_at >= ?
        """
        params: List[Any] = [since]
        if status in (None, "", "all"):
            pass
        elif status == "pending":
            sql += " AND d.resolution IS NULL"
        elif status == "resolved":
            sql += " AND d.resolution IS NOT NULL"
        else:
            sql += " AND d.resolution = ?"
            params.append(DuplicateResolution(status).value)
        sql += " ORDER BY d.created_at DESC, d.id DESC LIMIT ?"
        params.append(limit)

        rows = await self.db.fetch_all(sql, params)
        groups: Dict[str, DuplicateGroup] = {}
        for row in rows:
            group = groups.get(row["fingerprint"])
            if group is None:
                group = DuplicateGroup(
                    fingerprint=row["fingerprint"],
                    kept_content_id=row["duplicate_id"],
                    kept_title=row["kept_title"],
                    kept_url=row["kept_url"],
                    kept_quality_score=row["kept_quality_score"],
                )
                groups[row["fingerprint"]] = group
            group.entries.append(self._row_to_log_entry(row))

        if not groups:
            return DuplicateReport(status="empty", message=f"No duplicates found in the last {days} days")
        total = sum(len(g.entries) for g in groups.values())
        return DuplicateReport(
            status="success",
            message=f"Found {total} duplicate entries in {len(groups)} groups",
            groups=list(groups.values()),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reindex_content(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Index stored content that has no index entry yet.

        Fingerprints are recomputed from the stored fields; a record whose
        fingerprint already belongs to another record is logged as a duplicate
        instead of being indexed.
        """
        batch_size = batch_size or self.config.reindex_batch_size
        rows = await self.db.fetch_all(
            """
            SELECT c.* FROM ingested_content c
            LEFT JOIN content_index i ON i.content_id = c.id
            WHERE i.id IS NULL
            ORDER BY c.id LIMIT ?
            """,
            (batch_size,),
        )
        summary: Dict[str, Any] = {"processed": 0, "indexed": 0, "duplicates": 0, "errors": 0}
        for row in rows:
            summary["processed"] += 1
            item = ContentItem.from_row(row)
            fingerprint = self.fingerprints.fingerprint(item)
            try:
                existing = await self.is_duplicate(fingerprint, exclude_id=row["id"])
                if existing is not None:
                    await self.log_duplicate(row["id"], existing, fingerprint, row["source_url"])
                    summary["duplicates"] += 1
                    continue
                async with self.db.transaction() as conn:
                    if fingerprint != row["fingerprint"]:
                        await conn.execute(
                            "UPDATE ingested_content SET fingerprint = ?, updated_at = ? WHERE id = ?",
                            (fingerprint, to_iso(utcnow()), row["id"]),
                        )
                    await self.add_to_index(row["id"], fingerprint, row["quality_score"] or 0, conn=conn)
                summary["indexed"] += 1
            except DuplicateFingerprintError as e:
                if e.existing_id is not None:
                    await self.log_duplicate(row["id"], e.existing_id, fingerprint, row["source_url"])
                summary["duplicates"] += 1
            except (StorageError, aiosqlite.Error) as e:
                logger.error("Reindex failed for content", content_id=row["id"], error=str(e))
                summary["errors"] += 1

        summary["message"] = (
            f"Processed {summary['processed']} items: {summary['indexed']} indexed, "
            f"{summary['duplicates']} duplicates, {summary['errors']} errors"
        )
        logger.info("Reindex complete", **{k: v for k, v in summary.items() if k != "message"})
        return summary

    async def get_stats(self) -> Dict[str, Any]:
        indexed = await self.db.fetch_value("SELECT COUNT(*) FROM content_index")
        pending = await self.db.fetch_value("SELECT COUNT(*) FROM duplicate_log WHERE resolution IS NULL")
        total = await self.db.fetch_value("SELECT COUNT(*) FROM duplicate_log")
        return {"indexed": indexed or 0, "duplicates_logged": total or 0, "duplicates_pending": pending or 0}

    @staticmethod
    def _row_to_log_entry(row: Dict[str, Any]) -> DuplicateLogEntry:
        return DuplicateLogEntry(
            id=row["id"],
            content_id=row["content_id"],
            duplicate_id=row["duplicate_id"],
            fingerprint=row["fingerprint"],
            candidate_url=row.get("candidate_url"),
            resolution=DuplicateResolution(row["resolution"]) if row.get("resolution") else None,
            created_at=from_iso(row.get("created_at")),
            resolved_at=from_iso(row.get("resolved_at")),
        )
