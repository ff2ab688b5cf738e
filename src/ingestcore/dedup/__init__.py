"""Content fingerprinting and duplicate detection."""

from __future__ import annotations

from .deduplicator import Deduplicator, extract_title_terms
from .fingerprint import FingerprintGenerator, calculate_fingerprint, normalize_url, strip_html

__all__ = [
    "Deduplicator",
    "FingerprintGenerator",
    "calculate_fingerprint",
    "extract_title_terms",
    "normalize_url",
    "strip_html",
]
