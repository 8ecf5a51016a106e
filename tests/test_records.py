"""Tests for ledger record types."""

from datetime import datetime, timedelta, timezone

from hookledger.metrics.ledger import LEDGER_SCHEMAS
from hookledger.metrics.records import (
    PromptRecord,
    SessionRecord,
    TurnRecord,
    format_value,
    isoformat,
)

NOW = datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)


class TestFormatting:
    """Tests for cell value formatting."""

    def test_isoformat_milliseconds_utc(self):
        """Test UTC timestamps with millisecond precision and Z suffix."""
        assert isoformat(NOW) == "2025-01-02T03:04:05.678Z"

    def test_isoformat_converts_offsets(self):
        """Test that offset-aware times are converted to UTC."""
        local = NOW.astimezone(timezone(timedelta(hours=2)))
        assert isoformat(local) == "2025-01-02T03:04:05.678Z"

    def test_isoformat_naive_is_utc(self):
        """Test that naive datetimes are treated as UTC."""
        assert isoformat(datetime(2025, 1, 2, 3, 4, 5)) == "2025-01-02T03:04:05.000Z"

    def test_format_values(self):
        """Test formatting of each supported type."""
        assert format_value(None) == ""
        assert format_value(True) == "1"
        assert format_value(False) == "0"
        assert format_value(0.1) == "0.1000000000"
        assert format_value(42) == "42"
        assert format_value(NOW) == "2025-01-02T03:04:05.678Z"


class TestRecords:
    """Tests for record columns and rows."""

    def test_turn_columns(self):
        """Test that columns follow field order."""
        assert TurnRecord.columns() == (
            "session_id",
            "user_id",
            "turn_number",
            "started_at",
            "ended_at",
            "tool_count",
            "total_cost_usd",
            "interrupted",
        )

    def test_prompt_columns_use_category(self):
        """Test that the prompts ledger exposes a plain category column."""
        columns = PromptRecord.columns()
        assert "category" in columns
        assert "category_name" not in columns
        assert "prompt" not in columns

    def test_turn_row(self):
        """Test row formatting for a turn."""
        record = TurnRecord(
            session_id="s1",
            user_id="dev@example.com",
            turn_number=2,
            started_at=NOW,
            ended_at=NOW + timedelta(seconds=3),
            tool_count=4,
            total_cost_usd=0.25,
            interrupted=True,
        )
        assert record.to_row() == [
            "s1",
            "dev@example.com",
            "2",
            "2025-01-02T03:04:05.678Z",
            "2025-01-02T03:04:08.678Z",
            "4",
            "0.2500000000",
            "1",
        ]

    def test_session_row_without_start(self):
        """Test that a missing start time renders as an empty cell."""
        record = SessionRecord(
            session_id="s1",
            user_id="u",
            repo_url="unknown",
            repo_name="unknown",
            branch="unknown",
            head_commit="unknown",
            started_at=None,
            ended_at=NOW,
            turn_count=0,
            total_cost_usd=0.0,
            interrupted=False,
        )
        assert record.to_row()[6] == ""

    def test_every_category_has_schema(self):
        """Test the full set of ledger categories."""
        assert set(LEDGER_SCHEMAS) == {
            "sessions",
            "turns",
            "tool_usage",
            "costs",
            "prompts",
            "git_operations",
            "compactions",
            "commits",
        }
