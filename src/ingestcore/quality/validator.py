"""
Structural validation of content items ahead of storage.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from ingestcore.config.config import ProcessingConfig
from ingestcore.dedup.fingerprint import collapse_whitespace, strip_html
from ingestcore.protocols import ContentItem
from ingestcore.utils import parse_datetime, utcnow

MIN_LENGTHS: Dict[str, int] = {"title": 5, "content": 100, "summary": 10}
MIN_WORDS = 50
MAX_TITLE_RATIO = 0.2
STUFFING_MIN_WORDS = 100
STUFFING_RATIO = 0.05

_WORD = re.compile(r"[\W_]+", re.UNICODE)


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class ContentValidator:
    """Checks required fields, field formats and a few content heuristics."""

    def __init__(self, config: Optional[ProcessingConfig] = None):
        self.config = config or ProcessingConfig()

    def required_fields(self, content_type: str) -> List[str]:
        required = self.config.required_fields
        return list(required.get(content_type, required["default"]))

    def missing_fields(self, item: ContentItem) -> List[str]:
        missing = []
        for name in self.required_fields(item.type):
            value = getattr(item, name, None)
            if value is None:
                value = item.extra.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def validate(self, item: ContentItem, now: Optional[datetime] = None) -> ValidationReport:
        report = ValidationReport()

        report.missing_fields = self.missing_fields(item)
        for name in report.missing_fields:
            report.errors.append(f"Missing required field: {name}")

        plain_content = collapse_whitespace(strip_html(item.content or ""))
        lengths = {
            "title": len(item.title.strip()),
            "content": len(plain_content),
            "summary": len((item.summary or "").strip()),
        }
        for name, minimum in MIN_LENGTHS.items():
            if 0 < lengths[name] < minimum:
                report.errors.append(f"{name} is shorter than {minimum} characters")

        if item.publish_date:
            published = parse_datetime(item.publish_date)
            if published is None:
                report.errors.append(f"Unparseable publish date: {item.publish_date}")
            elif published > (now or utcnow()):
                report.warnings.append("Publish date is in the future")

        if item.source_url:
            parts = urlsplit(item.source_url.strip())
            if not parts.scheme or not parts.netloc:
                report.errors.append(f"Invalid source URL: {item.source_url}")

        self._check_content(item, plain_content, report)
        return report

    def _check_content(self, item: ContentItem, text: str, report: ValidationReport) -> None:
        if not text:
            return
        if len(item.title.strip()) > len(text) * MAX_TITLE_RATIO:
            report.warnings.append("Title is long relative to the content")

        words = _WORD.sub(" ", text.lower()).split()
        if len(words) < MIN_WORDS:
            report.warnings.append(f"Content has fewer than {MIN_WORDS} words")

        if len(words) >= STUFFING_MIN_WORDS:
            counts = Counter(w for w in words if len(w) > 3)
            for word, count in counts.most_common(3):
                if count / len(words) > STUFFING_RATIO:
                    report.warnings.append(f"Possible keyword stuffing: '{word}'")
