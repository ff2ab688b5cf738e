"""
Rule-based category scorers for content quality.

Each scorer owns one category, a weight and a fixed table of rules worth a
number of points. A category's percentage is the share of its maximum points
the item earned.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import ClassVar, Dict, List, Tuple

import structlog

from ingestcore.dedup.fingerprint import collapse_whitespace, strip_html
from ingestcore.protocols import CategoryScore, ContentItem, RuleResult
from ingestcore.utils import parse_datetime

logger = structlog.get_logger(__name__)

STOPWORDS = frozenset(
    """
    a an the and or but is are was were be been being in on at to for with by about like from of
    that this these those it its as into than then there their they them what which who whom
    will would could should have has had not no yes can may also just more most very such
    """.split()
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+(?=\s|$)")
_WORD = re.compile(r"[\W_]+", re.UNICODE)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_P_TAG = re.compile(r"<p[\s>]", re.IGNORECASE)
_BLOCK_END = re.compile(r"</p\s*>|<br\s*/?>", re.IGNORECASE)
_HEADING = re.compile(r"<h[1-6][\s>]", re.IGNORECASE)
_LIST = re.compile(r"<(ul|ol)[\s>]", re.IGNORECASE)
_EMPHASIS = re.compile(r"<(strong|em|b|i)[\s>]", re.IGNORECASE)
_IMG = re.compile(r"<img[\s>/]", re.IGNORECASE)
_IMG_WITH_ALT = re.compile(r"<img[^>]*\balt\s*=\s*[\"'][^\"']+[\"']", re.IGNORECASE)
_LINK = re.compile(r"<a\s[^>]*\bhref\s*=", re.IGNORECASE)
_TABLE = re.compile(r"<table[\s>]", re.IGNORECASE)
_SCHEMA_ORG = re.compile(r"itemtype\s*=\s*[\"']https?://schema\.org", re.IGNORECASE)
_JSON_LD = re.compile(r"application/ld\+json", re.IGNORECASE)

# Age in days -> points, checked from the smallest bucket up.
RECENCY_TABLE: Tuple[Tuple[int, int], ...] = ((1, 20), (7, 15), (30, 10), (90, 5), (365, 2))

TYPE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "article": ("analysis", "report", "research", "study", "according", "data", "expert", "findings"),
    "blog": ("experience", "tips", "guide", "opinion", "thoughts", "learned", "story", "personal"),
    "news": ("announced", "today", "reported", "official", "breaking", "update", "statement", "sources"),
    "podcast": ("episode", "listen", "host", "guest", "interview", "show", "conversation", "audio"),
    "video": ("watch", "video", "footage", "clip", "channel", "stream", "viewers", "scene"),
    "financial": ("market", "shares", "earnings", "revenue", "investors", "stocks", "percent", "quarter"),
    "event": ("event", "conference", "schedule", "venue", "tickets", "register", "speakers", "agenda"),
    "social": ("post", "followers", "shared", "trending", "thread", "community", "likes", "comments"),
}


def significant_words(text: str, min_length: int = 4) -> List[str]:
    return [w for w in _WORD.sub(" ", text.lower()).split() if len(w) >= min_length and w not in STOPWORDS]


@dataclass
class ContentFeatures:
    """Text features of one item, computed once and shared by all scorers."""

    item: ContentItem
    now: datetime
    raw: str = field(init=False)

    def __post_init__(self) -> None:
        self.raw = self.item.content or ""

    @cached_property
    def text(self) -> str:
        return collapse_whitespace(strip_html(self.raw))

    @cached_property
    def sentences(self) -> List[str]:
        return [s.strip() for s in _SENTENCE_SPLIT.split(self.text) if s.strip()]

    @cached_property
    def words(self) -> List[str]:
        return self.text.split()

    @cached_property
    def paragraphs(self) -> List[str]:
        marked = _BLOCK_END.sub(lambda m: m.group(0) + "\n\n", self.raw)
        return [collapse_whitespace(p) for p in _PARAGRAPH_SPLIT.split(strip_html(marked)) if p.strip()]

    @cached_property
    def lowered(self) -> str:
        return self.text.lower()


class CategoryScorer:
    """Base class: subclasses define ``name``, ``WEIGHT``, ``RULES`` and one method per rule."""

    name: ClassVar[str]
    WEIGHT: ClassVar[int]
    RULES: ClassVar[Dict[str, int]]
    HINT: ClassVar[str] = ""
    RULE_HINTS: ClassVar[Dict[str, str]] = {}

    @property
    def max_points(self) -> int:
        return sum(self.RULES.values())

    def score(self, features: ContentFeatures) -> CategoryScore:
        rules: Dict[str, RuleResult] = {}
        for rule, max_points in self.RULES.items():
            points = float(getattr(self, f"rule_{rule}")(features))
            rules[rule] = RuleResult(points=max(0.0, min(points, max_points)), max_points=max_points)
        return CategoryScore(
            name=self.name,
            weight=self.WEIGHT,
            points=sum(r.points for r in rules.values()),
            max_points=self.max_points,
            rules=rules,
        )

    def suggestions(self, category: CategoryScore) -> List[str]:
        hints = [self.HINT] if self.HINT else []
        for rule, result in category.rules.items():
            if not result.passed and rule in self.RULE_HINTS:
                hints.append(self.RULE_HINTS[rule])
        return hints


class CompletenessScorer(CategoryScorer):
    """Are the fields a reader expects present and plausible?"""

    name = "completeness"
    WEIGHT = 30
    RULES = {
        "has_title": 10,
        "title_length": 5,
        "has_content": 10,
        "content_length": 10,
        "has_summary": 5,
        "has_source_url": 5,
        "has_publish_date": 5,
    }
    HINT = "Fill in the missing content fields."
    RULE_HINTS = {
        "title_length": "Use a title between 5 and 100 characters.",
        "content_length": "Expand the content to at least 150 characters.",
        "has_summary": "Add a short summary of the content.",
        "has_source_url": "Include the original source URL.",
        "has_publish_date": "Include the original publish date.",
    }

    def rule_has_title(self, f: ContentFeatures) -> int:
        return 10 if f.item.title.strip() else 0

    def rule_title_length(self, f: ContentFeatures) -> int:
        return 5 if 5 <= len(f.item.title.strip()) <= 100 else 0

    def rule_has_content(self, f: ContentFeatures) -> int:
        return 10 if f.raw.strip() else 0

    def rule_content_length(self, f: ContentFeatures) -> int:
        return 10 if len(f.text) >= 150 else 0

    def rule_has_summary(self, f: ContentFeatures) -> int:
        return 5 if (f.item.summary or "").strip() else 0

    def rule_has_source_url(self, f: ContentFeatures) -> int:
        return 5 if (f.item.source_url or "").strip() else 0

    def rule_has_publish_date(self, f: ContentFeatures) -> int:
        return 5 if f.item.publish_date else 0


class ReadabilityScorer(CategoryScorer):
    """Sentence, paragraph and formatting heuristics."""

    name = "readability"
    WEIGHT = 20
    RULES = {"sentence_structure": 10, "paragraph_structure": 10, "reading_level": 10, "formatting": 10}
    HINT = "Improve the readability of the content."
    RULE_HINTS = {
        "sentence_structure": "Keep sentences between 5 and 200 characters long.",
        "paragraph_structure": "Split the content into several paragraphs.",
        "formatting": "Structure the content with headings, lists or emphasis.",
    }

    def rule_sentence_structure(self, f: ContentFeatures) -> int:
        if not f.sentences:
            return 0
        good = sum(1 for s in f.sentences if 5 <= len(s) <= 200)
        return round(good / len(f.sentences) * 10)

    def rule_paragraph_structure(self, f: ContentFeatures) -> int:
        raw = f.raw
        if not ("</p>" in raw.lower() or "\n\n" in raw or "<br" in raw.lower()):
            return 0
        count = len(_P_TAG.findall(raw)) or raw.count("\n\n") + 1
        if count <= 0:
            return 0
        if count == 1:
            return 2
        if count <= 3:
            return 5
        if count <= 10:
            return 8
        return 10

    def rule_reading_level(self, f: ContentFeatures) -> int:
        if not f.words or not f.sentences:
            return 0
        words_per_sentence = len(f.words) / len(f.sentences)
        if words_per_sentence < 5:
            points = 2
        elif words_per_sentence < 10:
            points = 3
        elif words_per_sentence <= 25:
            points = 5
        elif words_per_sentence <= 35:
            points = 3
        else:
            points = 2

        word_length = sum(len(w) for w in f.words) / len(f.words)
        if word_length < 3:
            points += 2
        elif word_length <= 6:
            points += 5
        else:
            points += 2
        return points

    def rule_formatting(self, f: ContentFeatures) -> int:
        points = 0
        if _HEADING.search(f.raw):
            points += 3
        if _LIST.search(f.raw):
            points += 3
        if _EMPHASIS.search(f.raw):
            points += 2
        if _IMG_WITH_ALT.search(f.raw):
            points += 2
        return min(points, 10)


class RelevanceScorer(CategoryScorer):
    """Does the body deliver what the title and content type promise?"""

    name = "relevance"
    WEIGHT = 25
    RULES = {"title_matches_content": 10, "keyword_presence": 10, "topic_coherence": 10}
    HINT = "Keep the content focused on the topic announced by its title."

    def rule_title_matches_content(self, f: ContentFeatures) -> int:
        title_words = set(significant_words(f.item.title))
        if not title_words:
            return 5
        found = sum(1 for word in title_words if word in f.lowered)
        return round(found / len(title_words) * 10)

    def rule_keyword_presence(self, f: ContentFeatures) -> int:
        keywords = TYPE_KEYWORDS.get((f.item.type or "").lower())
        if keywords is None:
            return 5
        body_words = set(_WORD.sub(" ", f.lowered).split())
        matches = sum(1 for keyword in keywords if keyword in body_words)
        return min(10, 2 + 2 * matches)

    def rule_topic_coherence(self, f: ContentFeatures) -> int:
        paragraphs = f.paragraphs
        if len(paragraphs) < 2:
            return 5
        top_terms = [{w for w, _ in Counter(significant_words(p)).most_common(3)} for p in paragraphs]
        overlaps = [len(a & b) for a, b in zip(top_terms, top_terms[1:])]
        if not overlaps:
            return 5
        average = sum(overlaps) / len(overlaps)
        if average >= 2:
            return 10
        if average >= 1:
            return 8
        if average >= 0.5:
            return 6
        if average > 0:
            return 4
        return 2


class FreshnessScorer(CategoryScorer):
    """Recency of the publish date."""

    name = "freshness"
    WEIGHT = 15
    RULES = {"recency": 20}
    HINT = "The content is dated; prefer more recent material."

    def rule_recency(self, f: ContentFeatures) -> int:
        published = parse_datetime(f.item.publish_date)
        if published is None:
            return 0
        age_days = max(0.0, (f.now - published).total_seconds() / 86400)
        for max_age, points in RECENCY_TABLE:
            if age_days <= max_age:
                return points
        return 0


class EnrichmentScorer(CategoryScorer):
    """Media, links and structured markup."""

    name = "enrichment"
    WEIGHT = 10
    RULES = {"has_images": 10, "has_links": 5, "has_structured_data": 5}
    HINT = "Enrich the content with media, links or structured data."
    RULE_HINTS = {
        "has_images": "Add relevant images.",
        "has_links": "Link to related or supporting sources.",
    }

    def rule_has_images(self, f: ContentFeatures) -> int:
        images = len(_IMG.findall(f.raw))
        extra = f.item.extra
        if images >= 3 or extra.get("images") or extra.get("media"):
            return 10
        if images >= 1:
            return 5
        return 0

    def rule_has_links(self, f: ContentFeatures) -> int:
        links = len(_LINK.findall(f.raw))
        if links >= 3:
            return 5
        if links >= 1:
            return 3
        return 0

    def rule_has_structured_data(self, f: ContentFeatures) -> int:
        points = 0
        if _TABLE.search(f.raw):
            points += 3
        if _SCHEMA_ORG.search(f.raw):
            points += 2
        if _JSON_LD.search(f.raw):
            points += 3
        if f.item.extra.get("structured_data"):
            points += 3
        return min(points, 5)


ALL_SCORERS: Tuple[CategoryScorer, ...] = (
    CompletenessScorer(),
    ReadabilityScorer(),
    RelevanceScorer(),
    FreshnessScorer(),
    EnrichmentScorer(),
)


def category_label(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "average"
    if score >= 30:
        return "poor"
    return "very_poor"

