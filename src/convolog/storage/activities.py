"""Activity log and daily rollups with SQLite persistence.

Activities are append-only. Each recorded activity is folded into its UTC
day's rollup row at write time, so reading statistics never rescans the
activity history.
"""

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Self

from convolog.logging import get_logger
from convolog.models import Activity, DailyStats, TokenUsage
from convolog.storage.store import to_db_time

logger = get_logger("activities")


@dataclass
class ActivityFilters:
    """Filters for listing activities."""

    source: str | None = None
    types: list[str] | None = None
    start: datetime | None = None
    end: datetime | None = None
    conversation_id: str | None = None
    search: str | None = None
    limit: int = 100
    offset: int = 0


def activity_date(timestamp: datetime) -> str:
    """UTC calendar date (YYYY-MM-DD) an activity rolls up into."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC).date().isoformat()


def _activity_from_row(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row["id"],
        type=row["type"],
        source=row["source"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        conversation_id=row["conversation_id"],
        conversation_title=row["conversation_title"],
        model=row["model"],
        tokens=TokenUsage.from_record(json.loads(row["tokens"])) if row["tokens"] else None,
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


def _stats_from_row(row: sqlite3.Row) -> DailyStats:
    return DailyStats(
        date=row["date"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        message_count=row["message_count"],
        artifact_count=row["artifact_count"],
        tool_use_count=row["tool_use_count"],
        model_usage=json.loads(row["model_usage"]) if row["model_usage"] else {},
    )


class ActivityStore:
    """Manages captured activities and their daily rollups in SQLite."""

    def __init__(self, db_path: Path) -> None:
        """Initialize activity store with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the activities and daily_stats tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                source TEXT NOT NULL,
                conversation_id TEXT,
                conversation_title TEXT,
                model TEXT,
                timestamp TEXT NOT NULL,
                tokens TEXT,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_activities_timestamp ON activities(timestamp);

            CREATE TABLE IF NOT EXISTS daily_stats (
                date TEXT PRIMARY KEY,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                artifact_count INTEGER NOT NULL DEFAULT 0,
                tool_use_count INTEGER NOT NULL DEFAULT 0,
                model_usage TEXT NOT NULL DEFAULT '{}'
            );
        """)
        self._conn.commit()

    def record(self, activity: Activity) -> bool:
        """Store an activity and fold it into its day's rollup.

        Recording an id that is already stored is a no-op, so replayed
        captures are not counted twice.

        Args:
            activity: Activity to record

        Returns:
            True if the activity was new
        """
        try:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO activities (
                    id, type, source, conversation_id, conversation_title,
                    model, timestamp, tokens, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    activity.id,
                    activity.type,
                    activity.source,
                    activity.conversation_id,
                    activity.conversation_title,
                    activity.model,
                    to_db_time(activity.timestamp),
                    json.dumps(activity.tokens.to_record()) if activity.tokens else None,
                    json.dumps(activity.metadata),
                ),
            )
            if cursor.rowcount == 0:
                self._conn.rollback()
                logger.debug("Activity already recorded: id=%s", activity.id)
                return False

            day = activity_date(activity.timestamp)
            stats = self.get_daily_stats(day) or DailyStats(date=day)
            stats.add(activity)
            self._write_stats(stats)
        except Exception:
            self._conn.rollback()
            raise

        self._conn.commit()
        logger.debug("Recorded activity: id=%s type=%s date=%s", activity.id, activity.type, day)
        return True

    def _write_stats(self, stats: DailyStats) -> None:
        self._conn.execute(
            """
            INSERT INTO daily_stats (
                date, input_tokens, output_tokens, message_count,
                artifact_count, tool_use_count, model_usage
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(date) DO UPDATE SET
                input_tokens = excluded.input_tokens,
                output_tokens = excluded.output_tokens,
                message_count = excluded.message_count,
                artifact_count = excluded.artifact_count,
                tool_use_count = excluded.tool_use_count,
                model_usage = excluded.model_usage
            """,
            (
                stats.date,
                stats.input_tokens,
                stats.output_tokens,
                stats.message_count,
                stats.artifact_count,
                stats.tool_use_count,
                json.dumps(stats.model_usage),
            ),
        )

    def get_daily_stats(self, day: str | date) -> DailyStats | None:
        """Get the rollup for one UTC date."""
        if isinstance(day, date):
            day = day.isoformat()
        cursor = self._conn.execute("SELECT * FROM daily_stats WHERE date = ?", (day,))
        row = cursor.fetchone()
        if row is None:
            return None
        return _stats_from_row(row)

    def list_daily_stats(self, start: str | None = None, end: str | None = None) -> list[DailyStats]:
        """List rollups in date order, optionally bounded (inclusive)."""
        sql = "SELECT * FROM daily_stats"
        clauses = []
        params: list[Any] = []
        if start is not None:
            clauses.append("date >= ?")
            params.append(start)
        if end is not None:
            clauses.append("date <= ?")
            params.append(end)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY date"
        return [_stats_from_row(row) for row in self._conn.execute(sql, params)]

    def list_activities(self, filters: ActivityFilters | None = None) -> list[Activity]:
        """List activities, newest first.

        Type and free-text filters are applied after the page is fetched,
        matching against the conversation title, message preview, artifact
        title and tool name.
        """
        filters = filters or ActivityFilters()

        clauses = []
        params: list[Any] = []
        if filters.source:
            clauses.append("source = ?")
            params.append(filters.source)
        if filters.start:
            clauses.append("timestamp >= ?")
            params.append(to_db_time(filters.start))
        if filters.end:
            clauses.append("timestamp <= ?")
            params.append(to_db_time(filters.end))
        if filters.conversation_id:
            clauses.append("conversation_id = ?")
            params.append(filters.conversation_id)

        sql = "SELECT * FROM activities"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC LIMIT ? OFFSET ?"
        params.extend([filters.limit, filters.offset])

        activities = [_activity_from_row(row) for row in self._conn.execute(sql, params)]

        if filters.types:
            activities = [a for a in activities if a.type in filters.types]

        if filters.search:
            needle = filters.search.lower()
            activities = [
                a
                for a in activities
                if any(
                    needle in (value or "").lower()
                    for value in (
                        a.conversation_title,
                        a.metadata.get("messagePreview"),
                        a.metadata.get("artifactTitle"),
                        a.metadata.get("toolName"),
                    )
                )
            ]

        return activities

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0]

    def clear(self) -> None:
        """Delete all activities together with their rollups."""
        self._conn.execute("DELETE FROM activities")
        self._conn.execute("DELETE FROM daily_stats")
        self._conn.commit()
        logger.info("Cleared activities and daily stats")

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
