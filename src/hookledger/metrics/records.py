"""Ledger record types.

Each record maps to one ledger category. The CSV column order of a category
is the field order of its record class.
"""

from __future__ import annotations

from dataclasses import astuple, dataclass, fields
from datetime import datetime, timezone
from typing import Any, ClassVar


def isoformat(dt: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_value(value: Any) -> str:
    """Render one field value as CSV cell text (before escaping)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return f"{value:.10f}"
    if isinstance(value, datetime):
        return isoformat(value)
    return str(value)


@dataclass(frozen=True)
class LedgerRecord:
    """Base class for rows appended to a ledger."""

    category: ClassVar[str]

    @classmethod
    def columns(cls) -> tuple[str, ...]:
        """Header columns for this record's ledger."""
        return tuple(f.name for f in fields(cls))

    def to_row(self) -> list[str]:
        """Values in column order, formatted as cell text."""
        return [format_value(v) for v in astuple(self)]


@dataclass(frozen=True)
class SessionRecord(LedgerRecord):
    category: ClassVar[str] = "sessions"

    session_id: str
    user_id: str
    repo_url: str
    repo_name: str
    branch: str
    head_commit: str
    started_at: datetime | None
    ended_at: datetime
    turn_count: int
    total_cost_usd: float
    interrupted: bool


@dataclass(frozen=True)
class TurnRecord(LedgerRecord):
    category: ClassVar[str] = "turns"

    session_id: str
    user_id: str
    turn_number: int
    started_at: datetime | None
    ended_at: datetime
    tool_count: int
    total_cost_usd: float
    interrupted: bool


@dataclass(frozen=True)
class ToolInvocationRecord(LedgerRecord):
    category: ClassVar[str] = "tool_usage"

    session_id: str
    user_id: str
    turn_number: int
    tool_name: str
    started_at: datetime
    completed_at: datetime
    success: bool
    processing_time_ms: int
    input_size: int
    output_size: int


@dataclass(frozen=True)
class CostRecord(LedgerRecord):
    category: ClassVar[str] = "costs"

    session_id: str
    user_id: str
    turn_number: int
    message_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_write_tokens: int
    cache_read_tokens: int
    total_tokens: int
    pricing_tier: str
    input_cost_usd: float
    output_cost_usd: float
    cache_write_cost_usd: float
    cache_read_cost_usd: float
    total_cost_usd: float
    timestamp: datetime


@dataclass(frozen=True)
class PromptRecord(LedgerRecord):
    category: ClassVar[str] = "prompts"

    session_id: str
    user_id: str
    turn_number: int
    category_name: str
    subcategory: str
    prompt_length: int
    timestamp: datetime

    @classmethod
    def columns(cls) -> tuple[str, ...]:
        # `category` is taken by the ledger name
        return tuple("category" if c == "category_name" else c for c in super().columns())


@dataclass(frozen=True)
class GitOperationRecord(LedgerRecord):
    category: ClassVar[str] = "git_operations"

    session_id: str
    user_id: str
    turn_number: int
    operation_type: str
    branch: str
    remote: str
    timestamp: datetime
    success: bool


@dataclass(frozen=True)
class CommitRecord(LedgerRecord):
    category: ClassVar[str] = "commits"

    commit_sha: str
    session_id: str
    user_id: str
    repo_name: str
    branch: str
    commit_message: str
    author_email: str
    committed_at: str
    files_changed: int
    insertions: int
    deletions: int
    total_lines_changed: int


@dataclass(frozen=True)
class CompactionRecord(LedgerRecord):
    category: ClassVar[str] = "compactions"

    session_id: str
    user_id: str
    turn_number: int
    timestamp: datetime
    tokens_before: int
    tokens_after: int
    reduction_tokens: int
    reduction_percent: str
    compaction_type: str
    trigger_reason: str


RECORD_TYPES: tuple[type[LedgerRecord], ...] = (
    SessionRecord,
    TurnRecord,
    ToolInvocationRecord,
    CostRecord,
    PromptRecord,
    GitOperationRecord,
    CompactionRecord,
    CommitRecord,
)
