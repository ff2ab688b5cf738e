"""
Exception hierarchy for IngestCore.

Rejections of individual items are not exceptions; they are reported as
``ProcessingResult`` outcomes. The errors below are raised where a caller has
to decide how to proceed.
"""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for all IngestCore errors."""


class StorageError(IngestError):
    """The content database could not complete an operation."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(message)
        self.operation = operation


class DeduplicationLookupError(StorageError):
    """The fingerprint index could not be queried, uniqueness is unknown."""

    def __init__(self, message: str, fingerprint: str) -> None:
        super().__init__(message, operation="dedup_lookup")
        self.fingerprint = fingerprint


class DuplicateFingerprintError(StorageError):
    """A write collided with a fingerprint already held by another record."""

    def __init__(self, fingerprint: str, existing_id: Optional[int]) -> None:
        super().__init__(
            f"Fingerprint {fingerprint[:16]}... already belongs to content {existing_id}",
            operation="unique_fingerprint",
        )
        self.fingerprint = fingerprint
        self.existing_id = existing_id


class DuplicateLogNotFoundError(IngestError):
    """No duplicate log entry exists with the requested id."""


class SourceNotFoundError(IngestError):
    """No content source exists with the requested id."""


class SourceConfigurationError(IngestError, ValueError):
    """A source mutation would violate its interval invariants."""


class AdapterNotFoundError(IngestError):
    """No fetch adapter is registered for a source type."""


class CrawlerBusyError(IngestError):
    """A crawl run was requested while another one is in progress."""
