"""
Content source registry, fetch bookkeeping and adaptive fetch intervals.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import structlog

from ingestcore.config.config import SourceConfig
from ingestcore.exceptions import SourceConfigurationError, SourceNotFoundError
from ingestcore.protocols import ContentSource, ErrorSeverity, FetchStats, FetchStatus, SourceMetric, SourceType
from ingestcore.storage.sqlite_manager import SQLiteManager
from ingestcore.utils import from_iso, to_iso, utcnow

logger = structlog.get_logger(__name__)

_MUTABLE_FIELDS = frozenset(
    {"name", "type", "url", "config", "content_types", "active", "fetch_interval", "min_interval", "max_interval"}
)


def validate_intervals(fetch_interval: int, min_interval: int, max_interval: int) -> None:
    """Raise unless ``0 < min_interval <= fetch_interval <= max_interval``."""
    if min_interval <= 0:
        raise SourceConfigurationError(f"min_interval must be positive, got {min_interval}")
    if min_interval > max_interval:
        raise SourceConfigurationError(f"min_interval ({min_interval}) exceeds max_interval ({max_interval})")
    if not min_interval <= fetch_interval <= max_interval:
        raise SourceConfigurationError(
            f"fetch_interval ({fetch_interval}) must lie within [{min_interval}, {max_interval}]"
        )


class SourceManager:
    """
    Owns the ``content_sources`` table and the per-source metric tables.

    Status updates for one source are serialized with a per-source lock, so two
    runs finishing the same source cannot interleave their read-modify-write.
    """

    def __init__(self, db: SQLiteManager, config: Optional[SourceConfig] = None) -> None:
        self.db = db
        self.config = config or SourceConfig()
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def add_source(
        self,
        name: str,
        source_type: Union[SourceType, str],
        url: str,
        config: Optional[Dict[str, Any]] = None,
        content_types: Optional[Iterable[str]] = None,
        fetch_interval: Optional[int] = None,
        min_interval: Optional[int] = None,
        max_interval: Optional[int] = None,
        active: bool = True,
    ) -> ContentSource:
        kind = self._parse_type(source_type)
        fetch_interval = self.config.default_fetch_interval if fetch_interval is None else int(fetch_interval)
        min_interval = self.config.min_interval if min_interval is None else int(min_interval)
        max_interval = self.config.max_interval if max_interval is None else int(max_interval)
        validate_intervals(fetch_interval, min_interval, max_interval)

        now = to_iso(utcnow())
        cursor = await self.db.execute(
            """
            INSERT INTO content_sources (
                name, type, url, config, content_types, active, fetch_interval, min_interval, max_interval,
                fetch_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                name,
                kind.value,
                url,
                json.dumps(config or {}),
                json.dumps(sorted(set(content_types or []))),
                int(active),
                fetch_interval,
                min_interval,
                max_interval,
                now,
                now,
            ),
        )
        source_id = int(cursor.lastrowid)
        logger.info("Source added", source_id=source_id, name=name, type=kind.value)
        return await self._require(source_id)

    async def get_source(self, source_id: int) -> Optional[ContentSource]:
        row = await self.db.fetch_one("SELECT * FROM content_sources WHERE id = ?", (source_id,))
        return self._row_to_source(row) if row else None

    async def _require(self, source_id: int) -> ContentSource:
        source = await self.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(f"Source {source_id} not found")
        return source

    async def update_source(self, source_id: int, **fields: Any) -> ContentSource:
        """
        Update source fields.

        Raises:
            SourceNotFoundError: no such source.
            SourceConfigurationError: the resulting intervals would be out of bounds.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise SourceConfigurationError(f"Unknown source field(s): {sorted(unknown)}")

        async with self._locks[source_id]:
            source = await self._require(source_id)
            fetch_interval = int(fields.get("fetch_interval", source.fetch_interval))
            min_interval = int(fields.get("min_interval", source.min_interval))
            max_interval = int(fields.get("max_interval", source.max_interval))
            validate_intervals(fetch_interval, min_interval, max_interval)

            values: Dict[str, Any] = {}
            for key, value in fields.items():
                if key == "type":
                    value = self._parse_type(value).value
                elif key == "config":
                    value = json.dumps(value or {})
                elif key == "content_types":
                    value = json.dumps(sorted(set(value or [])))
                elif key == "active":
                    value = int(bool(value))
                values[key] = value
            values["updated_at"] = to_iso(utcnow())

            assignments = ", ".join(f"{key} = ?" for key in values)
            await self.db.execute(
                f"UPDATE content_sources SET {assignments} WHERE id = ?", (*values.values(), source_id)
            )
        logger.info("Source updated", source_id=source_id, fields=sorted(fields))
        return await self._require(source_id)

    async def deactivate_source(self, source_id: int) -> bool:
        cursor = await self.db.execute(
            "UPDATE content_sources SET active = 0, updated_at = ? WHERE id = ?", (to_iso(utcnow()), source_id)
        )
        return cursor.rowcount > 0

    async def delete_source(self, source_id: int) -> bool:
        cursor = await self.db.execute("DELETE FROM content_sources WHERE id = ?", (source_id,))
        self._locks.pop(source_id, None)
        return cursor.rowcount > 0

    async def list_sources(
        self, active_only: bool = False, source_type: Optional[Union[SourceType, str]] = None
    ) -> List[ContentSource]:
        sql = "SELECT * FROM content_sources WHERE 1=1"
        params: List[Any] = []
        if active_only:
            sql += " AND active = 1"
        if source_type is not None:
            sql += " AND type = ?"
            params.append(self._parse_type(source_type).value)
        rows = await self.db.fetch_all(sql + " ORDER BY id", params)
        return [self._row_to_source(row) for row in rows]

    async def load_active_sources(self) -> List[ContentSource]:
        return await self.list_sources(active_only=True)

    async def get_due_sources(
        self,
        now: Optional[datetime] = None,
        source_types: Optional[Iterable[Union[SourceType, str]]] = None,
        source_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
    ) -> List[ContentSource]:
        """Active sources whose fetch interval has elapsed, never-fetched sources first."""
        now = now or utcnow()
        types: Optional[Set[SourceType]] = (
            {self._parse_type(t) for t in source_types} if source_types is not None else None
        )
        ids = set(source_ids) if source_ids is not None else None

        due = [
            source
            for source in await self.load_active_sources()
            if (types is None or source.type in types) and (ids is None or source.id in ids) and source.is_due(now)
        ]
        due.sort(key=lambda s: (s.last_fetch is not None, s.next_fetch_at() or now, s.id))
        return due[:limit] if limit is not None else due

    # ------------------------------------------------------------------
    # Fetch bookkeeping
    # ------------------------------------------------------------------

    def calculate_optimal_interval(self, source: ContentSource, items_found: int, new_items: int) -> int:
        """
        Back off sources that keep returning known items, speed up busy ones.

        The result always lies within the source's own bounds.
        """
        current = source.fetch_interval
        if items_found > 0 and new_items == 0:
            interval = min(int(current * self.config.quiet_backoff_multiplier), source.max_interval)
        elif new_items > self.config.hot_new_items_threshold:
            interval = max(int(current * self.config.hot_speedup_multiplier), source.min_interval)
        else:
            interval = current
        return max(source.min_interval, min(interval, source.max_interval))

    async def update_source_status(
        self, source_id: int, success: bool, stats: Optional[FetchStats] = None
    ) -> ContentSource:
        """
        Record a fetch attempt: last fetch time, status, adapted interval,
        attempt count and the day's metrics.
        """
        stats = stats or FetchStats()
        async with self._locks[source_id]:
            source = await self._require(source_id)
            if success:
                interval = self.calculate_optimal_interval(source, stats.items_found, stats.new_items)
            else:
                interval = source.fetch_interval
            now = utcnow()
            status = FetchStatus.SUCCESS if success else FetchStatus.FAILED
            await self.db.execute(
                """
                UPDATE content_sources
                SET last_fetch = ?, last_status = ?, fetch_interval = ?, fetch_count = fetch_count + 1, updated_at = ?
                WHERE id = ?
                """,
                (to_iso(now), status.value, interval, to_iso(now), source_id),
            )
            await self.record_metrics(source_id, stats)

        if interval != source.fetch_interval:
            logger.info(
                "Fetch interval adapted",
                source_id=source_id,
                old_interval=source.fetch_interval,
                new_interval=interval,
                items_found=stats.items_found,
                new_items=stats.new_items,
            )
        return await self._require(source_id)

    async def record_metrics(self, source_id: int, stats: FetchStats, day: Optional[date] = None) -> None:
        """Accumulate ``stats`` into the source's row for ``day`` (default today)."""
        await self.db.execute(
            """
            INSERT INTO source_metrics (
                source_id, date, items_found, items_stored, items_rejected, processing_time, error_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_id, date) DO UPDATE SET
                items_found = items_found + excluded.items_found,
                items_stored = items_stored + excluded.items_stored,
                items_rejected = items_rejected + excluded.items_rejected,
                processing_time = processing_time + excluded.processing_time,
                error_count = error_count + excluded.error_count
            """,
            (
                source_id,
                (day or utcnow().date()).isoformat(),
                stats.items_found,
                stats.new_items,
                stats.items_rejected,
                stats.processing_time,
                stats.error_count,
            ),
        )

    async def get_source_metrics(self, source_id: int, days: int = 30) -> List[SourceMetric]:
        since = (utcnow().date() - timedelta(days=days)).isoformat()
        rows = await self.db.fetch_all(
            "SELECT * FROM source_metrics WHERE source_id = ? AND date >= ? ORDER BY date DESC",
            (source_id, since),
        )
        return [
            SourceMetric(
                source_id=row["source_id"],
                date=row["date"],
                items_found=row["items_found"],
                items_stored=row["items_stored"],
                items_rejected=row["items_rejected"],
                processing_time=row["processing_time"],
                error_count=row["error_count"],
            )
            for row in rows
        ]

    async def log_source_error(
        self,
        source_id: int,
        error_type: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    ) -> int:
        cursor = await self.db.execute(
            """
            INSERT INTO source_errors (source_id, error_type, message, context, severity, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (source_id, error_type, message, json.dumps(context or {}, default=str), severity.value, to_iso(utcnow())),
        )
        logger.warning("Source error logged", source_id=source_id, error_type=error_type, message=message)
        return int(cursor.lastrowid)

    async def get_source_errors(self, source_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await self.db.fetch_all(
            "SELECT * FROM source_errors WHERE source_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (source_id, limit),
        )
        for row in rows:
            row["context"] = json.loads(row["context"] or "{}")
        return rows

    async def get_crawler_metrics(self, days: int = 30) -> Dict[str, Any]:
        """Totals across sources and crawl runs for the last ``days`` days."""
        since_day = (utcnow().date() - timedelta(days=days)).isoformat()
        since = to_iso(utcnow() - timedelta(days=days))
        totals = await self.db.fetch_one(
            """
            SELECT
                COALESCE(SUM(items_found), 0) AS items_found,
                COALESCE(SUM(items_stored), 0) AS items_stored,
                COALESCE(SUM(items_rejected), 0) AS items_rejected,
                COALESCE(SUM(error_count), 0) AS errors,
                COALESCE(SUM(processing_time), 0) AS processing_time
            FROM source_metrics WHERE date >= ?
            """,
            (since_day,),
        )
        runs = await self.db.fetch_one(
            """
            SELECT
                COUNT(*) AS runs,
                COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed,
                COALESCE(AVG(duration), 0) AS avg_duration
            FROM crawler_runs WHERE started_at >= ?
            """,
            (since,),
        )
        by_type = await self.db.fetch_all(
            "SELECT type, COUNT(*) AS count, SUM(active) AS active FROM content_sources GROUP BY type"
        )
        return {
            "days": days,
            **(totals or {}),
            "runs": (runs or {}).get("runs", 0),
            "completed_runs": (runs or {}).get("completed", 0),
            "avg_run_duration": (runs or {}).get("avg_duration", 0.0),
            "sources_by_type": {row["type"]: {"total": row["count"], "active": row["active"] or 0} for row in by_type},
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_type(value: Union[SourceType, str]) -> SourceType:
        try:
            return value if isinstance(value, SourceType) else SourceType(value)
        except ValueError as e:
            raise SourceConfigurationError(f"Unknown source type: {value}") from e

    @staticmethod
    def _row_to_source(row: Dict[str, Any]) -> ContentSource:
        return ContentSource(
            id=row["id"],
            name=row["name"],
            type=SourceType(row["type"]),
            url=row["url"],
            config=json.loads(row["config"] or "{}"),
            content_types=set(json.loads(row["content_types"] or "[]")),
            active=bool(row["active"]),
            last_fetch=from_iso(row["last_fetch"]),
            last_status=FetchStatus(row["last_status"]) if row["last_status"] else None,
            fetch_interval=row["fetch_interval"],
            min_interval=row["min_interval"],
            max_interval=row["max_interval"],
            fetch_count=row["fetch_count"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
