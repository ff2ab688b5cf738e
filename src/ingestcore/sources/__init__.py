"""Content source registry and adaptive fetch intervals."""

from __future__ import annotations

from .manager import SourceManager, validate_intervals

__all__ = ["SourceManager", "validate_intervals"]
