"""
Quality assessment orchestrator that aggregates the category scorers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

import structlog

from ingestcore.config.config import QualityConfig
from ingestcore.observability import histogram
from ingestcore.protocols import CategoryScore, ContentItem, QualityAssessment
from ingestcore.quality.scorers import ALL_SCORERS, CategoryScorer, ContentFeatures, category_label
from ingestcore.utils import ensure_utc, utcnow

logger = structlog.get_logger(__name__)

# Categories below this percentage produce improvement suggestions.
SUGGESTION_THRESHOLD = 50


class QualityScorer:
    """
    Scores content 0..100 as the weighted mean of category percentages.

    Scoring reads no clock other than ``now``, which callers may pin so that
    the same input always yields the same score.
    """

    def __init__(self, config: Optional[QualityConfig] = None, scorers: Optional[Iterable[CategoryScorer]] = None):
        self.config = config or QualityConfig()
        self.scorers: List[CategoryScorer] = list(scorers) if scorers is not None else list(ALL_SCORERS)
        total_weight = sum(s.WEIGHT for s in self.scorers)
        if total_weight != 100:
            logger.warning("Scorer weights don't sum to 100", total_weight=total_weight)

    def assess(self, item: ContentItem, now: Optional[datetime] = None) -> QualityAssessment:
        """Full assessment: score, label, per-category breakdown and suggestions."""
        features = ContentFeatures(item=item, now=ensure_utc(now) if now else utcnow())

        categories: Dict[str, CategoryScore] = {}
        for scorer in self.scorers:
            categories[scorer.name] = scorer.score(features)

        weighted = sum(cat.percentage * cat.weight for cat in categories.values()) / 100
        score = max(0, min(100, int(round(weighted))))

        assessment = QualityAssessment(
            score=score,
            category=category_label(score),
            categories=categories,
            suggestions=self._suggestions(categories),
        )
        histogram("quality_score", score, labels={"content_type": item.type or "unknown"})
        logger.debug("Quality assessed", score=score, category=assessment.category, title=item.title[:80])
        return assessment

    def score(self, item: ContentItem, now: Optional[datetime] = None) -> int:
        return self.assess(item, now=now).score

    def passes_quality_threshold(
        self,
        item_or_score: Union[ContentItem, int, float],
        minimum: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        threshold = self.config.min_score if minimum is None else minimum
        if isinstance(item_or_score, ContentItem):
            value: float = self.score(item_or_score, now=now)
        else:
            value = item_or_score
        return value >= threshold

    def _suggestions(self, categories: Dict[str, CategoryScore]) -> List[str]:
        suggestions: List[str] = []
        for scorer in self.scorers:
            category = categories[scorer.name]
            if category.percentage >= SUGGESTION_THRESHOLD:
                continue
            for hint in scorer.suggestions(category):
                if hint not in suggestions:
                    suggestions.append(hint)
        return suggestions[: self.config.max_suggestions]
