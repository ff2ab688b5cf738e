"""
Failed item queue for items that could not be stored.

Items that hit a storage fault are persisted with their raw payload and are
replayed through the processor with exponential backoff.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from ingestcore.config.config import RecoveryConfig
from ingestcore.protocols import ErrorSeverity
from ingestcore.storage.sqlite_manager import SQLiteManager
from ingestcore.utils import from_iso, to_iso, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class FailedItem:
    """A raw item that failed processing."""

    item_id: str
    payload: Dict[str, Any]
    failure_stage: str
    error_type: str
    error_message: str
    source_id: Optional[int] = None
    source_url: Optional[str] = None
    attempt_count: int = 0
    max_retries: int = 3
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    first_failure_time: datetime = field(default_factory=utcnow)
    last_failure_time: datetime = field(default_factory=utcnow)
    next_retry_time: Optional[datetime] = None
    resolved: bool = False

    def calculate_next_retry(self, base_delay: int = 60, max_delay: int = 86400) -> datetime:
        """Calculate next retry time with exponential backoff."""
        # Exponential backoff: delay = base * (2 ^ attempt)
        delay_seconds = min(base_delay * (2**self.attempt_count), max_delay)
        return utcnow() + timedelta(seconds=delay_seconds)

    def should_retry(self, now: Optional[datetime] = None) -> bool:
        if self.resolved or self.attempt_count >= self.max_retries:
            return False
        if self.severity is ErrorSeverity.CRITICAL:
            return False
        return self.next_retry_time is None or (now or utcnow()) >= self.next_retry_time

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> FailedItem:
        return cls(
            item_id=row["item_id"],
            payload=json.loads(row["payload"]),
            failure_stage=row["failure_stage"],
            error_type=row["error_type"],
            error_message=row["error_message"],
            source_id=row.get("source_id"),
            source_url=row.get("source_url"),
            attempt_count=row["attempt_count"],
            max_retries=row["max_retries"],
            severity=ErrorSeverity(row.get("severity") or ErrorSeverity.MEDIUM.value),
            first_failure_time=from_iso(row["first_failure_time"]) or utcnow(),
            last_failure_time=from_iso(row["last_failure_time"]) or utcnow(),
            next_retry_time=from_iso(row.get("next_retry_time")),
            resolved=bool(row["resolved"]),
        )


class FailedItemQueue:
    """
    Persistent retry queue backed by the ``failed_items`` table.

    Features:
    - Exponential backoff between attempts
    - Maximum retry attempts per item
    - Failure statistics by stage and error type
    """

    def __init__(self, db: SQLiteManager, config: Optional[RecoveryConfig] = None):
        self.db = db
        self.config = config or RecoveryConfig()

    async def add_failed_item(
        self,
        payload: Dict[str, Any],
        failure_stage: str,
        error: BaseException,
        source_id: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    ) -> str:
        """Queue a raw item for a later retry."""
        failed = FailedItem(
            item_id=str(uuid4()),
            payload=dict(payload),
            failure_stage=failure_stage,
            error_type=type(error).__name__,
            error_message=str(error),
            source_id=source_id,
            source_url=payload.get("source_url"),
            max_retries=self.config.max_retries,
            severity=severity,
        )
        failed.next_retry_time = failed.calculate_next_retry(self.config.base_delay_seconds, self.config.max_delay_seconds)

        await self.db.execute(
            """
            INSERT INTO failed_items (
                item_id, source_id, source_url, payload, failure_stage, error_type, error_message,
                attempt_count, max_retries, severity, first_failure_time, last_failure_time, next_retry_time,
                resolved
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                failed.item_id,
                failed.source_id,
                failed.source_url,
                json.dumps(failed.payload, default=str),
                failed.failure_stage,
                failed.error_type,
                failed.error_message,
                failed.attempt_count,
                failed.max_retries,
                failed.severity.value,
                to_iso(failed.first_failure_time),
                to_iso(failed.last_failure_time),
                to_iso(failed.next_retry_time) if severity is not ErrorSeverity.CRITICAL else None,
            ),
        )
        logger.warning(
            "Item queued for retry",
            item_id=failed.item_id,
            stage=failure_stage,
            error_type=failed.error_type,
            next_retry=to_iso(failed.next_retry_time),
        )
        return failed.item_id

    async def get_retryable(self, now: Optional[datetime] = None, limit: int = 100) -> List[FailedItem]:
        """Items whose retry time has come and that still have attempts left."""
        now = now or utcnow()
        rows = await self.db.fetch_all(
            """
            SELECT * FROM failed_items
            WHERE resolved = 0
              AND next_retry_time IS NOT NULL
              AND next_retry_time <= ?
              AND attempt_count < max_retries
              AND severity != 'critical'
            ORDER BY next_retry_time
            LIMIT ?
            """,
            (to_iso(now), limit),
        )
        items = [FailedItem.from_row(row) for row in rows]
        return [item for item in items if item.should_retry(now)]

    async def get_item(self, item_id: str) -> Optional[FailedItem]:
        row = await self.db.fetch_one("SELECT * FROM failed_items WHERE item_id = ?", (item_id,))
        return FailedItem.from_row(row) if row else None

    async def mark_retry_result(self, item_id: str, success: bool, error: Optional[BaseException] = None) -> None:
        """Resolve an item or push its next retry further out."""
        now = utcnow()
        if success:
            await self.db.execute(
                "UPDATE failed_items SET resolved = 1 WHERE item_id = ?",
                (item_id,),
            )
            logger.info("Queued item recovered", item_id=item_id)
            return

        failed = await self.get_item(item_id)
        if failed is None:
            return
        failed.attempt_count += 1
        next_retry: Optional[datetime] = None
        if failed.attempt_count < failed.max_retries:
            next_retry = failed.calculate_next_retry(self.config.base_delay_seconds, self.config.max_delay_seconds)

        await self.db.execute(
            """
            UPDATE failed_items
            SET attempt_count = ?, last_failure_time = ?, next_retry_time = ?,
                error_type = ?, error_message = ?
            WHERE item_id = ?
            """,
            (
                failed.attempt_count,
                to_iso(now),
                to_iso(next_retry),
                type(error).__name__ if error else failed.error_type,
                str(error) if error else failed.error_message,
                item_id,
            ),
        )
        if next_retry is None:
            logger.error("Queued item exhausted its retries", item_id=item_id, attempts=failed.attempt_count)

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about failed items."""
        by_stage = await self.db.fetch_all(
            "SELECT failure_stage, COUNT(*) AS count FROM failed_items WHERE resolved = 0 GROUP BY failure_stage"
        )
        by_error = await self.db.fetch_all(
            "SELECT error_type, COUNT(*) AS count FROM failed_items WHERE resolved = 0 GROUP BY error_type"
        )
        totals = await self.db.fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN resolved = 1 THEN 1 ELSE 0 END) AS resolved,
                SUM(CASE WHEN resolved = 0 AND attempt_count >= max_retries THEN 1 ELSE 0 END) AS exhausted,
                AVG(attempt_count) AS avg_attempts
            FROM failed_items
            """
        )
        totals = totals or {}
        return {
            "total_failures": totals.get("total") or 0,
            "resolved": totals.get("resolved") or 0,
            "max_retries_reached": totals.get("exhausted") or 0,
            "average_attempts": totals.get("avg_attempts") or 0,
            "failures_by_stage": {row["failure_stage"]: row["count"] for row in by_stage},
            "failures_by_error": {row["error_type"]: row["count"] for row in by_error},
        }

    async def cleanup_resolved(self, older_than_days: int = 30) -> int:
        """Remove resolved entries beyond the retention period."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        cursor = await self.db.execute(
            "DELETE FROM failed_items WHERE resolved = 1 AND last_failure_time < ?", (to_iso(cutoff),)
        )
        return cursor.rowcount
