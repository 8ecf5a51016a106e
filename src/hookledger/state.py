"""Per-session state persisted between hook invocations.

Every event runs in a fresh process, so the turn counter, in-flight tools
and running costs live in one JSON file per session. Writes go to a temp
file that is fsynced and renamed over the target, so a crash never leaves a
partially written state file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SAFE_NAME = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]*")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass
class InFlightTool:
    """A tool invocation that has started but not finished."""

    tool_name: str
    turn_number: int
    started_at: datetime
    input_size: int = 0
    command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = _format_time(self.started_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InFlightTool:
        return cls(
            tool_name=data["tool_name"],
            turn_number=int(data.get("turn_number", 1)),
            started_at=_parse_time(data["started_at"]),
            input_size=int(data.get("input_size", 0)),
            command=data.get("command"),
        )


@dataclass
class SessionState:
    """Mutable state of one session.

    Attributes:
        session_id: The session identifier.
        turn_number: Number of the latest turn, 0 before any prompt.
        turn_open: Whether the latest turn has not been finalized yet.
        turn_started_at: When the latest turn started.
        session_started_at: When the first event of the session was seen.
        tool_count: Tools started during the current turn.
        turn_cost: Cost accumulated during the current turn.
        session_cost: Cost accumulated over the whole session.
        tool_counter: Monotonic counter used to key in-flight tools.
        in_flight: Started tools awaiting completion, keyed by counter.
        last_commit_sha: Sha of the last commit recorded for the session.
    """

    session_id: str
    turn_number: int = 0
    turn_open: bool = False
    turn_started_at: datetime | None = None
    session_started_at: datetime | None = None
    tool_count: int = 0
    turn_cost: float = 0.0
    session_cost: float = 0.0
    tool_counter: int = 0
    in_flight: dict[str, InFlightTool] = field(default_factory=dict)
    last_commit_sha: str | None = None

    @property
    def current_turn(self) -> int:
        """Turn number used for tool, cost and compaction rows."""
        return self.turn_number or 1

    def touch(self, now: datetime) -> None:
        """Record the session start time on the first event."""
        if self.session_started_at is None:
            self.session_started_at = now

    def start_turn(self, now: datetime) -> None:
        """Begin the next turn, resetting turn-scoped counters."""
        self.turn_number += 1
        self.turn_open = True
        self.turn_started_at = now
        self.tool_count = 0
        self.turn_cost = 0.0

    def add_cost(self, cost: float) -> None:
        self.turn_cost += cost
        self.session_cost += cost

    def start_tool(
        self,
        tool_name: str,
        now: datetime,
        input_size: int = 0,
        command: str | None = None,
    ) -> str:
        """Register a started tool.

        Returns:
            The key under which the tool is stored. Keys are never reused
            within a session.
        """
        self.tool_count += 1
        self.tool_counter += 1
        key = str(self.tool_counter)
        self.in_flight[key] = InFlightTool(
            tool_name=tool_name,
            turn_number=self.current_turn,
            started_at=now,
            input_size=input_size,
            command=command,
        )
        return key

    def finish_tool(self, tool_name: str) -> InFlightTool | None:
        """Remove and return the most recently started tool with this name."""
        for key in sorted(self.in_flight, key=int, reverse=True):
            if self.in_flight[key].tool_name == tool_name:
                return self.in_flight.pop(key)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "session_id": self.session_id,
            "turn_number": self.turn_number,
            "turn_open": self.turn_open,
            "turn_started_at": _format_time(self.turn_started_at),
            "session_started_at": _format_time(self.session_started_at),
            "tool_count": self.tool_count,
            "turn_cost": self.turn_cost,
            "session_cost": self.session_cost,
            "tool_counter": self.tool_counter,
            "in_flight": {key: tool.to_dict() for key, tool in self.in_flight.items()},
            "last_commit_sha": self.last_commit_sha,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        """Create a SessionState from a dict.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed.
        """
        in_flight = data.get("in_flight", {})
        for key in in_flight:
            if not (key.isascii() and key.isdigit()):
                raise ValueError(f"in-flight key must be numeric, got {key!r}")

        return cls(
            session_id=data["session_id"],
            turn_number=int(data.get("turn_number", 0)),
            turn_open=bool(data.get("turn_open", False)),
            turn_started_at=_parse_time(data.get("turn_started_at")),
            session_started_at=_parse_time(data.get("session_started_at")),
            tool_count=int(data.get("tool_count", 0)),
            turn_cost=float(data.get("turn_cost", 0.0)),
            session_cost=float(data.get("session_cost", 0.0)),
            tool_counter=int(data.get("tool_counter", 0)),
            in_flight={
                str(key): InFlightTool.from_dict(value)
                for key, value in in_flight.items()
            },
            last_commit_sha=data.get("last_commit_sha"),
        )


def safe_session_filename(session_id: str) -> str:
    """Turn a session id into a safe file name stem.

    Ids that are already safe are used as-is. Anything else is sanitized and
    suffixed with a hash of the raw id, so distinct ids never share a file.
    """
    if _SAFE_NAME.fullmatch(session_id):
        return session_id
    name = _UNSAFE_CHARS.sub("_", session_id).lstrip(".") or "unknown"
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:12]
    return f"{name}-{digest}"


class SessionStateStore:
    """Loads and saves SessionState as one JSON file per session."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, session_id: str) -> Path:
        """Get the state file for a session."""
        return self.state_dir / f"{safe_session_filename(session_id)}.json"

    def load(self, session_id: str) -> SessionState:
        """Load a session's state.

        A missing file yields fresh state. An unreadable file, or one holding
        another session's state, is moved aside to `<name>.corrupt` and fresh
        state is returned.
        """
        path = self.path_for(session_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            state = SessionState.from_dict(data)
            if state.session_id != session_id:
                raise ValueError(f"state belongs to session {state.session_id!r}")
            return state
        except FileNotFoundError:
            return SessionState(session_id=session_id)
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            quarantine = path.with_name(path.name + ".corrupt")
            logger.error(f"Corrupt state file {path}: {e}; moved to {quarantine}")
            os.replace(path, quarantine)
            return SessionState(session_id=session_id)

    def save(self, state: SessionState) -> None:
        """Durably persist a session's state.

        Raises:
            OSError: If the state cannot be written.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(state.session_id)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list_sessions(self) -> list[Path]:
        """List state files, oldest first."""
        if not self.state_dir.is_dir():
            return []
        return sorted(self.state_dir.glob("*.json"), key=lambda p: p.stat().st_mtime)

    def prune(
        self,
        older_than: timedelta,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> list[Path]:
        """Remove state files not modified within `older_than`.

        No schedule is implied; callers decide when to prune.

        Args:
            older_than: Age beyond which a state file is removed.
            now: Reference time. Defaults to the current time.
            dry_run: If True, report what would be removed without removing.

        Returns:
            Paths removed (or that would be removed).
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - older_than).timestamp()

        pruned = []
        for path in self.list_sessions():
            if path.stat().st_mtime < cutoff:
                pruned.append(path)
                if not dry_run:
                    path.unlink(missing_ok=True)
                    logger.info(f"Pruned state file {path}")
        return pruned
