"""
Content fingerprinting for exact deduplication.

A fingerprint is the SHA-256 digest of five normalized fields joined with a
fixed delimiter:

    title || body text || url || publish date || source id

Normalization is deterministic and idempotent, so re-ingesting the same
logical content with different casing, markup whitespace or tracking
parameters yields the same fingerprint. Missing fields normalize to the empty
string and keep their position.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Mapping, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from bs4 import BeautifulSoup

from ingestcore.protocols import ContentItem
from ingestcore.utils import parse_datetime

logger = structlog.get_logger(__name__)

DELIMITER = "||"
TRACKING_PARAMS = frozenset({"fbclid", "gclid"})
TRACKING_PREFIXES = ("utm_",)

_WHITESPACE = re.compile(r"\s+")
_TAG_HINT = re.compile(r"<[a-zA-Z!/]")


def strip_html(text: str) -> str:
    """Drop markup, including script and style bodies, and return plain text."""
    if not text:
        return ""
    if not _TAG_HINT.search(text):
        return text
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(" ")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def normalize_url(url: str) -> str:
    """
    Lowercase a URL, drop tracking query parameters and re-serialize what is
    left sorted by key. An empty query loses its ``?``.
    """
    url = (url or "").strip().lower()
    if not url:
        return ""
    parts = urlsplit(url)
    if not parts.query:
        return urlunsplit(parts)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)]
    kept.sort(key=lambda pair: pair[0])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def normalize_date(value: Any) -> str:
    """``YYYY-MM-DD`` when the value parses as a date, else the lowered raw string."""
    if value is None or value == "":
        return ""
    parsed = parse_datetime(value, keep_offset=True)
    if parsed is not None:
        return parsed.strftime("%Y-%m-%d")
    return str(value).strip().lower()


ItemLike = Union[ContentItem, Mapping[str, Any]]


def _field(item: ItemLike, name: str) -> Any:
    if isinstance(item, ContentItem):
        return getattr(item, name)
    return item.get(name)


class FingerprintGenerator:
    """Derives stable content fingerprints from normalized item fields."""

    def normalize_fields(self, item: ItemLike) -> Tuple[str, str, str, str, str]:
        title = str(_field(item, "title") or "").strip().lower()
        content = collapse_whitespace(strip_html(str(_field(item, "content") or ""))).lower()
        url = normalize_url(str(_field(item, "source_url") or ""))
        date = normalize_date(_field(item, "publish_date"))
        source_id = _field(item, "source_id")
        source = "" if source_id is None else str(source_id).strip().lower()
        return title, content, url, date, source

    def canonical_string(self, item: ItemLike) -> str:
        return DELIMITER.join(self.normalize_fields(item))

    def fingerprint(self, item: ItemLike) -> str:
        """64-character hex SHA-256 over the canonical string."""
        return hashlib.sha256(self.canonical_string(item).encode("utf-8")).hexdigest()


def calculate_fingerprint(item: ItemLike) -> str:
    return FingerprintGenerator().fingerprint(item)
