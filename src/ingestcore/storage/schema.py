"""
Database schema definition for the IngestCore content database.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# Timestamps are ISO-8601 UTC strings written by the application.

content_sources_table = Table(
    "content_sources",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", Text, nullable=False),
    Column("type", Text, nullable=False, index=True),
    Column("url", Text, nullable=False),
    Column("config", Text, nullable=False, default="{}"),
    Column("content_types", Text, nullable=False, default="[]"),
    Column("active", Boolean, nullable=False, default=True, index=True),
    Column("fetch_interval", Integer, nullable=False, default=3600),
    Column("min_interval", Integer, nullable=False, default=1800),
    Column("max_interval", Integer, nullable=False, default=86400),
    Column("last_fetch", Text),
    Column("last_status", Text),
    Column("fetch_count", Integer, nullable=False, default=0),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)


ingested_content_table = Table(
    "ingested_content",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("type", Text, nullable=False, default="article", index=True),
    Column("title", Text, nullable=False),
    Column("content", Text, nullable=False),
    Column("summary", Text),
    Column("source_url", Text, nullable=False, index=True),
    Column("source_id", Text, index=True),
    Column("publish_date", Text),
    Column("ingestion_date", Text, nullable=False),
    Column("fingerprint", Text, nullable=False, unique=True),
    Column("quality_score", Integer, nullable=False, default=0, index=True),
    Column("status", Text, nullable=False, default="pending", index=True),
    Column("language", Text),
    Column("extra", Text, nullable=False, default="{}"),
    Column("processing_time", Float),
    Column("created_at", Text, nullable=False, index=True),
    Column("updated_at", Text, nullable=False),
)


content_index_table = Table(
    "content_index",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "content_id",
        Integer,
        ForeignKey("ingested_content.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("fingerprint", Text, nullable=False, unique=True),
    Column("quality_score", Integer, nullable=False, default=0),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)


duplicate_log_table = Table(
    "duplicate_log",
    metadata,
    Column("id", Integer, primary_key=True),
    # The candidate is usually rejected unstored, so content_id is optional.
    Column("content_id", Integer, ForeignKey("ingested_content.id", ondelete="SET NULL")),
    Column("duplicate_id", Integer, ForeignKey("ingested_content.id", ondelete="CASCADE"), nullable=False),
    Column("fingerprint", Text, nullable=False, index=True),
    Column("candidate_url", Text),
    Column("resolution", Text),
    Column("created_at", Text, nullable=False, index=True),
    Column("resolved_at", Text),
)


source_metrics_table = Table(
    "source_metrics",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("source_id", Integer, ForeignKey("content_sources.id", ondelete="CASCADE"), nullable=False),
    Column("date", Text, nullable=False),
    Column("items_found", Integer, nullable=False, default=0, server_default="0"),
    Column("items_stored", Integer, nullable=False, default=0, server_default="0"),
    Column("items_rejected", Integer, nullable=False, default=0, server_default="0"),
    Column("processing_time", Float, nullable=False, default=0.0, server_default="0"),
    Column("error_count", Integer, nullable=False, default=0, server_default="0"),
    UniqueConstraint("source_id", "date", name="uq_source_metrics_source_date"),
)


storage_metrics_table = Table(
    "storage_metrics",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("source_id", Text, nullable=False),
    Column("date", Text, nullable=False),
    Column("content_type", Text, nullable=False),
    Column("items", Integer, nullable=False, default=0),
    Column("bytes", Integer, nullable=False, default=0),
    UniqueConstraint("source_id", "date", "content_type", name="uq_storage_metrics_source_date_type"),
)


source_errors_table = Table(
    "source_errors",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("source_id", Integer, ForeignKey("content_sources.id", ondelete="CASCADE"), nullable=False),
    Column("error_type", Text, nullable=False),
    Column("message", Text, nullable=False),
    Column("context", Text, nullable=False, default="{}"),
    Column("severity", Text, nullable=False, default="medium"),
    Column("created_at", Text, nullable=False, index=True),
)


crawler_runs_table = Table(
    "crawler_runs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("run_id", Text, nullable=False, unique=True),
    Column("trigger", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("started_at", Text, nullable=False, index=True),
    Column("finished_at", Text),
    Column("sources_processed", Integer, nullable=False, default=0, server_default="0"),
    Column("sources_failed", Integer, nullable=False, default=0, server_default="0"),
    Column("items_found", Integer, nullable=False, default=0, server_default="0"),
    Column("items_processed", Integer, nullable=False, default=0, server_default="0"),
    Column("items_rejected", Integer, nullable=False, default=0, server_default="0"),
    Column("errors", Integer, nullable=False, default=0, server_default="0"),
    Column("duration", Float, nullable=False, default=0.0, server_default="0"),
)


failed_items_table = Table(
    "failed_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("item_id", Text, nullable=False, unique=True),
    Column("source_id", Integer),
    Column("source_url", Text),
    Column("payload", Text, nullable=False),
    Column("failure_stage", Text, nullable=False),
    Column("error_type", Text, nullable=False),
    Column("error_message", Text, nullable=False),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("max_retries", Integer, nullable=False, default=3),
    Column("severity", Text, nullable=False, default="medium", server_default="medium"),
    Column("first_failure_time", Text, nullable=False),
    Column("last_failure_time", Text, nullable=False),
    Column("next_retry_time", Text, index=True),
    Column("resolved", Boolean, nullable=False, default=False, index=True),
)


# Indexes for common query patterns
Index("ix_ingested_content_type_status", ingested_content_table.c.type, ingested_content_table.c.status)
Index("ix_source_errors_source_created", source_errors_table.c.source_id, source_errors_table.c.created_at)
Index("ix_duplicate_log_resolution", duplicate_log_table.c.resolution)
