"""
Tests for adaptive fetch interval calculation.
"""

from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from ingestcore.config import SourceConfig
from ingestcore.exceptions import SourceConfigurationError
from ingestcore.protocols import ContentSource, SourceType
from ingestcore.sources import SourceManager
from ingestcore.sources.manager import validate_intervals
from ingestcore.utils import utcnow


def make_source(**overrides) -> ContentSource:
    fields = dict(id=1, name="Example feed", type=SourceType.FEED, url="https://example.com/feed.xml")
    fields.update(overrides)
    return ContentSource(**fields)


@pytest.fixture
def manager():
    # The calculation is pure; no database is touched.
    return SourceManager(db=None, config=SourceConfig())


@pytest.mark.unit
class TestCalculateOptimalInterval:
    def test_quiet_source_backs_off(self, manager):
        assert manager.calculate_optimal_interval(make_source(), items_found=10, new_items=0) == 5400

    def test_hot_source_speeds_up(self, manager):
        assert manager.calculate_optimal_interval(make_source(), items_found=10, new_items=6) == 2880

    def test_threshold_is_exclusive(self, manager):
        assert manager.calculate_optimal_interval(make_source(), items_found=10, new_items=5) == 3600

    def test_empty_fetch_keeps_interval(self, manager):
        assert manager.calculate_optimal_interval(make_source(), items_found=0, new_items=0) == 3600

    def test_backoff_is_clamped_to_max(self, manager):
        source = make_source(fetch_interval=80000)

        assert manager.calculate_optimal_interval(source, items_found=3, new_items=0) == 86400

    def test_speedup_is_clamped_to_min(self, manager):
        source = make_source(fetch_interval=2000)

        assert manager.calculate_optimal_interval(source, items_found=20, new_items=20) == 1800

    def test_source_bounds_win_over_defaults(self, manager):
        source = make_source(fetch_interval=600, min_interval=300, max_interval=700)

        assert manager.calculate_optimal_interval(source, items_found=2, new_items=0) == 700

    @pytest.mark.parametrize("found, new", [(0, 0), (5, 0), (50, 50), (3, 1), (100, 7)])
    def test_result_stays_within_bounds(self, manager, found, new):
        source = make_source(fetch_interval=1800, min_interval=1800, max_interval=1800)

        assert manager.calculate_optimal_interval(source, found, new) == 1800


@pytest.mark.unit
class TestValidateIntervals:
    def test_valid(self):
        validate_intervals(3600, 1800, 86400)
        validate_intervals(1800, 1800, 1800)

    @pytest.mark.parametrize(
        "fetch, low, high",
        [(3600, 0, 86400), (3600, 7200, 3600), (100, 1800, 86400), (90000, 1800, 86400)],
    )
    def test_invalid(self, fetch, low, high):
        with pytest.raises(SourceConfigurationError):
            validate_intervals(fetch, low, high)


@pytest.mark.unit
class TestIsDue:
    def test_never_fetched_is_due(self):
        assert make_source().is_due()

    def test_inactive_is_never_due(self):
        assert not make_source(active=False).is_due()

    def test_due_after_interval(self):
        now = utcnow()
        source = make_source(last_fetch=now - timedelta(seconds=3600))

        assert source.is_due(now)
        assert not source.is_due(now - timedelta(seconds=1))

    def test_accepts(self):
        assert make_source().accepts("news")
        assert make_source(content_types={"event"}).accepts("event")
        assert not make_source(content_types={"event"}).accepts("news")


@st.composite
def interval_bounds(draw):
    low = draw(st.integers(min_value=60, max_value=7200))
    high = draw(st.integers(min_value=low, max_value=7 * 86400))
    current = draw(st.integers(min_value=low, max_value=high))
    return low, current, high


@pytest.mark.unit
class TestIntervalProperties:
    @given(
        bounds=interval_bounds(),
        items_found=st.integers(min_value=0, max_value=200),
        new_ratio=st.floats(min_value=0.0, max_value=1.0),
    )
    @settings(max_examples=200, deadline=None)
    def test_interval_stays_within_bounds(self, bounds, items_found, new_ratio):
        low, current, high = bounds
        source = make_source(fetch_interval=current, min_interval=low, max_interval=high)
        manager = SourceManager(db=None, config=SourceConfig())

        interval = manager.calculate_optimal_interval(source, items_found, int(items_found * new_ratio))

        assert low <= interval <= high
