"""
Tests for content fingerprinting and field normalization.
"""

import string

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from ingestcore.dedup.fingerprint import (
    FingerprintGenerator,
    calculate_fingerprint,
    normalize_date,
    normalize_url,
    strip_html,
)
from ingestcore.protocols import ContentItem


@pytest.fixture
def generator():
    return FingerprintGenerator()


@pytest.fixture
def fed_item():
    return {
        "title": "Fed Raises Rates",
        "content": "<p>The Federal Reserve raised its benchmark rate on Wednesday.</p>",
        "source_url": "https://x.com/a?utm_source=rss",
        "publish_date": "2024-01-01",
    }


@pytest.mark.unit
class TestFingerprintGenerator:
    """Fingerprint determinism and sensitivity."""

    def test_fingerprint_is_sha256_hex(self, generator, fed_item):
        fingerprint = generator.fingerprint(fed_item)

        assert len(fingerprint) == 64
        int(fingerprint, 16)

    def test_same_input_same_fingerprint(self, generator, fed_item):
        assert generator.fingerprint(fed_item) == generator.fingerprint(dict(fed_item))
        assert calculate_fingerprint(fed_item) == generator.fingerprint(fed_item)

    def test_content_item_and_mapping_agree(self, generator, fed_item):
        item = ContentItem.from_raw(fed_item)

        assert generator.fingerprint(item) == generator.fingerprint(fed_item)

    def test_casing_tracking_params_and_whitespace_are_ignored(self, generator, fed_item):
        variant = dict(fed_item)
        variant["title"] = "  fed raises rates "
        variant["source_url"] = "HTTPS://X.COM/a"
        variant["content"] = "<p>The  Federal Reserve\nraised its benchmark rate on Wednesday.</p>"

        assert generator.fingerprint(variant) == generator.fingerprint(fed_item)

    @pytest.mark.parametrize(
        "field_name, value",
        [
            ("title", "Fed Holds Rates"),
            ("content", "<p>The Federal Reserve held its benchmark rate.</p>"),
            ("source_url", "https://x.com/b"),
            ("publish_date", "2024-01-02"),
            ("source_id", "7"),
        ],
    )
    def test_each_field_changes_the_fingerprint(self, generator, fed_item, field_name, value):
        changed = dict(fed_item, **{field_name: value})

        assert generator.fingerprint(changed) != generator.fingerprint(fed_item)

    def test_missing_fields_keep_their_position(self, generator):
        # An empty title must not let the content slide into the title slot.
        a = generator.canonical_string({"title": "", "content": "abc"})
        b = generator.canonical_string({"title": "abc", "content": ""})

        assert a != b
        assert a.count("||") == 4

    def test_normalization_is_idempotent(self, generator, fed_item):
        title, content, url, date, source = generator.normalize_fields(fed_item)
        again = generator.normalize_fields(
            {"title": title, "content": content, "source_url": url, "publish_date": date, "source_id": source}
        )

        assert again == (title, content, url, date, source)


@pytest.mark.unit
class TestNormalizers:
    """Field-level normalization helpers."""

    def test_normalize_url_drops_tracking_parameters(self):
        url = "https://Example.com/story?utm_source=rss&b=2&fbclid=x&a=1&gclid=y#top"

        assert normalize_url(url) == "https://example.com/story?a=1&b=2#top"

    def test_normalize_url_drops_empty_query(self):
        assert normalize_url("https://x.com/a?utm_campaign=spring") == "https://x.com/a"

    def test_normalize_url_keeps_duplicate_keys_in_order(self):
        assert normalize_url("https://x.com/?tag=b&tag=a") == "https://x.com/?tag=b&tag=a"

    def test_normalize_url_empty(self):
        assert normalize_url("") == ""
        assert normalize_url("   ") == ""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-01-01", "2024-01-01"),
            ("2024-01-01T23:30:00+00:00", "2024-01-01"),
            ("2024-01-01T23:00:00-05:00", "2024-01-01"),
            ("January 5, 2024", "2024-01-05"),
            (None, ""),
            ("", ""),
            ("Not A Date", "not a date"),
        ],
    )
    def test_normalize_date(self, value, expected):
        assert normalize_date(value) == expected

    def test_strip_html_drops_script_and_style(self):
        html = "<p>Hello <b>world</b></p><script>alert(1)</script><style>p {}</style>"
        text = strip_html(html)

        assert "Hello" in text and "world" in text
        assert "alert" not in text
        assert "p {}" not in text

    def test_strip_html_leaves_plain_text(self):
        assert strip_html("a < b and c > d") == "a < b and c > d"


words = st.lists(st.text(alphabet=string.ascii_letters + string.digits, min_size=1, max_size=12), min_size=1, max_size=20)


@pytest.mark.unit
class TestFingerprintProperties:
    @given(title=words, content=words, padding=st.sampled_from([" ", "  ", "\n", "\t "]))
    @settings(max_examples=100, deadline=None)
    def test_presentation_changes_keep_the_fingerprint(self, title, content, padding):
        item = {
            "title": " ".join(title),
            "content": " ".join(content),
            "source_url": "https://news.example.com/story",
            "publish_date": "2024-03-01",
        }
        variant = {
            "title": padding + " ".join(title).upper() + padding,
            "content": padding.join(content),
            "source_url": "HTTPS://news.example.com/story?utm_medium=email",
            "publish_date": "2024-03-01T08:15:00Z",
        }

        assert calculate_fingerprint(variant) == calculate_fingerprint(item)
