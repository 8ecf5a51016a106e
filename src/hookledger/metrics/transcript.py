"""Token usage extraction from session transcripts.

A transcript is a JSONL file written by the agent runtime. Assistant entries
carry a `message.usage` block with the token counts for that message.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hookledger.metrics.pricing import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageEntry:
    """Usage reported for one assistant message.

    Attributes:
        message_id: The assistant message id, or "unknown".
        model: Model identifier, or None when not reported.
        usage: Token counts for the message.
        timestamp: Timestamp string from the transcript entry, if any.
    """

    message_id: str
    model: str | None
    usage: TokenUsage
    timestamp: str | None = None

    def recorded_at(self) -> datetime | None:
        """Parse the entry timestamp as an aware UTC datetime.

        Returns:
            The timestamp, or None when it is missing or not ISO 8601.
        """
        if not isinstance(self.timestamp, str) or not self.timestamp:
            return None
        try:
            parsed = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)


def _token_count(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key) or 0
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def parse_usage_entry(entry: dict[str, Any]) -> UsageEntry | None:
    """Convert one transcript entry into a UsageEntry.

    Returns:
        UsageEntry for assistant entries with usage data, None otherwise.
    """
    if entry.get("type") != "assistant":
        return None
    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    return UsageEntry(
        message_id=str(message.get("id") or "unknown"),
        model=message.get("model"),
        usage=TokenUsage(
            input_tokens=_token_count(usage, "input_tokens"),
            output_tokens=_token_count(usage, "output_tokens"),
            cache_write_tokens=_token_count(usage, "cache_creation_input_tokens"),
            cache_read_tokens=_token_count(usage, "cache_read_input_tokens"),
        ),
        timestamp=entry.get("timestamp"),
    )


def iter_usage_entries(path: Path) -> Iterator[UsageEntry]:
    """Yield usage entries from a transcript in file order.

    Lines that are blank or not valid JSON are skipped.

    Raises:
        OSError: If the transcript cannot be read.
    """
    with open(path, encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed transcript line {line_number} in {path}")
                continue
            if not isinstance(entry, dict):
                continue
            usage_entry = parse_usage_entry(entry)
            if usage_entry is not None:
                yield usage_entry


def last_usage_entry(path: Path) -> UsageEntry | None:
    """Return the last usage entry of a transcript.

    Only the final entry is used for costing, not a sum over the session.

    Returns:
        The last UsageEntry, or None if the transcript is missing, unreadable
        or has no usage data.
    """
    if not path.is_file():
        logger.warning(f"Transcript not found: {path}")
        return None

    last = None
    try:
        for entry in iter_usage_entries(path):
            last = entry
    except OSError as e:
        logger.warning(f"Cannot read transcript {path}: {e}")
        return None
    return last
