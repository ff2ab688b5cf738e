"""Rule-based content quality scoring and validation."""

from __future__ import annotations

from .assessor import QualityScorer
from .scorers import ALL_SCORERS, RECENCY_TABLE, TYPE_KEYWORDS, category_label
from .validator import ContentValidator, ValidationReport

__all__ = [
    "ALL_SCORERS",
    "ContentValidator",
    "QualityScorer",
    "RECENCY_TABLE",
    "TYPE_KEYWORDS",
    "ValidationReport",
    "category_label",
]
