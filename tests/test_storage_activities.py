"""Tests for the activity store and daily rollups."""

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from convolog.models import Activity, TokenUsage
from convolog.storage.activities import ActivityFilters, ActivityStore, activity_date

DAY_ONE = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
DAY_TWO = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def make_activity(
    activity_id: str,
    activity_type: str = "message_received",
    timestamp: datetime = DAY_ONE,
    tokens: TokenUsage | None = None,
    model: str | None = None,
    **fields,
) -> Activity:
    return Activity(
        id=activity_id,
        type=activity_type,
        source="extension",
        timestamp=timestamp,
        tokens=tokens,
        model=model,
        **fields,
    )


@pytest.fixture
def store(tmp_path: Path) -> ActivityStore:
    """Provide an ActivityStore with a temporary database."""
    store = ActivityStore(tmp_path / "state" / "activities.db")
    yield store
    store.close()


class TestActivityDate:
    """Tests for activity_date."""

    def test_uses_utc_calendar_date(self) -> None:
        """Timestamps should roll up into their UTC date."""
        late_evening_west = datetime(2026, 3, 1, 20, 0, tzinfo=timezone(timedelta(hours=-8)))
        assert activity_date(late_evening_west) == "2026-03-02"

    def test_naive_timestamp_is_utc(self) -> None:
        """Naive timestamps should be treated as UTC."""
        assert activity_date(datetime(2026, 3, 1, 23, 59)) == "2026-03-01"


class TestRecord:
    """Tests for recording activities."""

    def test_token_aggregation(self, store: ActivityStore) -> None:
        """Two messages of 10/5 and 7/3 tokens should roll up to 17/8."""
        store.record(make_activity("a1", tokens=TokenUsage(10, 5), model="model-a"))
        store.record(make_activity("a2", tokens=TokenUsage(7, 3), model="model-b"))

        stats = store.get_daily_stats("2026-03-01")

        assert stats.input_tokens == 17
        assert stats.output_tokens == 8
        assert stats.message_count == 2
        assert stats.model_usage == {"model-a": 1, "model-b": 1}

    def test_duplicate_id_is_noop(self, store: ActivityStore) -> None:
        """Recording the same id twice should not double count."""
        activity = make_activity("a1", tokens=TokenUsage(10, 5))

        assert store.record(activity) is True
        assert store.record(activity) is False

        assert store.count() == 1
        assert store.get_daily_stats("2026-03-01").input_tokens == 10

    def test_counts_by_type(self, store: ActivityStore) -> None:
        """Artifacts and tool uses should have their own counters."""
        store.record(make_activity("a1", "artifact_created"))
        store.record(make_activity("a2", "tool_use"))
        store.record(make_activity("a3", "tool_result"))
        store.record(make_activity("a4", "message_sent"))

        stats = store.get_daily_stats(DAY_ONE.date())

        assert stats.artifact_count == 1
        assert stats.tool_use_count == 1
        assert stats.message_count == 1

    def test_separate_days(self, store: ActivityStore) -> None:
        """Activities on different days should roll up separately."""
        store.record(make_activity("a1", timestamp=DAY_ONE, tokens=TokenUsage(1, 1)))
        store.record(make_activity("a2", timestamp=DAY_TWO, tokens=TokenUsage(2, 2)))

        days = store.list_daily_stats()

        assert [(d.date, d.input_tokens) for d in days] == [("2026-03-01", 1), ("2026-03-02", 2)]
        assert [d.date for d in store.list_daily_stats(start="2026-03-02")] == ["2026-03-02"]
        assert [d.date for d in store.list_daily_stats(end="2026-03-01")] == ["2026-03-01"]

    def test_missing_day(self, store: ActivityStore) -> None:
        """Days without activity should have no rollup."""
        assert store.get_daily_stats("2026-01-01") is None


class TestListActivities:
    """Tests for listing activities."""

    def test_round_trip_and_order(self, store: ActivityStore) -> None:
        """Activities should be returned newest first with all fields."""
        first = make_activity(
            "a1",
            timestamp=DAY_ONE,
            tokens=TokenUsage(10, 5, cache_read_tokens=3),
            model="model-a",
            conversation_id="conv-1",
            conversation_title="Planning",
            metadata={"messageRole": "assistant", "messagePreview": "Sure"},
        )
        second = make_activity("a2", "tool_use", timestamp=DAY_TWO, metadata={"toolName": "web_search"})
        store.record(first)
        store.record(second)

        assert store.list_activities() == [second, first]

    def test_filters(self, store: ActivityStore) -> None:
        """Source, type, conversation, date and text filters should narrow the list."""
        store.record(make_activity("a1", conversation_id="c1", conversation_title="Trip planning"))
        store.record(make_activity("a2", "tool_use", conversation_id="c2", metadata={"toolName": "web_search"}))
        store.record(make_activity("a3", timestamp=DAY_TWO, conversation_id="c1"))

        def ids(**kwargs) -> list[str]:
            return sorted(a.id for a in store.list_activities(ActivityFilters(**kwargs)))

        assert ids(types=["tool_use"]) == ["a2"]
        assert ids(conversation_id="c1") == ["a1", "a3"]
        assert ids(start=DAY_TWO) == ["a3"]
        assert ids(end=DAY_ONE) == ["a1", "a2"]
        assert ids(search="trip") == ["a1"]
        assert ids(search="WEB_SEARCH") == ["a2"]
        assert ids(source="web-export") == []
        assert ids(limit=1) == ["a3"]

    def test_clear(self, store: ActivityStore) -> None:
        """Clearing should remove activities and rollups together."""
        store.record(make_activity("a1", tokens=TokenUsage(1, 1)))

        store.clear()

        assert store.count() == 0
        assert store.list_daily_stats() == []
