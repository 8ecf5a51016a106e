"""Event types, decoding and dispatch for hookledger.

One lifecycle event arrives per process as a JSON object with an `eventKind`
field. It is decoded into one of the frozen event classes below and handed
to the matching collector handler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from hookledger.metrics.collector import TelemetryCollector

logger = logging.getLogger(__name__)

UNKNOWN_SESSION = "unknown"


class EventKind(Enum):
    """Lifecycle events emitted by the agent runtime."""

    PROMPT_SUBMITTED = "PromptSubmitted"
    TOOL_STARTING = "ToolStarting"
    TOOL_FINISHED = "ToolFinished"
    CONTEXT_COMPACTED = "ContextCompacted"
    SESSION_STOPPED = "SessionStopped"


class EventValidationError(ValueError):
    """Raised when an event payload cannot be decoded."""


@dataclass(frozen=True)
class PromptSubmitted:
    session_id: str
    prompt: str = ""


@dataclass(frozen=True)
class ToolStarting:
    session_id: str
    tool_name: str
    tool_input: Any = None


@dataclass(frozen=True)
class ToolFinished:
    session_id: str
    tool_name: str
    tool_input: Any = None
    tool_output: Any = None
    success: bool = True


@dataclass(frozen=True)
class ContextCompacted:
    session_id: str
    tokens_before: int = 0
    tokens_after: int = 0
    compaction_type: str = "auto"
    trigger_reason: str = "threshold"


@dataclass(frozen=True)
class SessionStopped:
    session_id: str
    transcript_path: str | None = None
    was_interrupted: bool = False


Event = Union[PromptSubmitted, ToolStarting, ToolFinished, ContextCompacted, SessionStopped]


def _session_id(data: dict[str, Any]) -> str:
    value = data.get("sessionId")
    if value is None or value == "":
        return UNKNOWN_SESSION
    return str(value)


def _tool_name(data: dict[str, Any], kind: EventKind) -> str:
    value = data.get("toolName")
    if not isinstance(value, str) or not value:
        raise EventValidationError(f"{kind.value} event requires 'toolName'")
    return value


def _token_count(data: dict[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise EventValidationError(f"'{key}' must be an integer, got {value!r}")
    return value


def _flag(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)


def _text(data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        return default
    return str(value)


def decode_event(data: Any) -> Event:
    """Decode a canonical event payload.

    Args:
        data: Parsed JSON value.

    Returns:
        The decoded event.

    Raises:
        EventValidationError: If the payload is not an object, lacks a known
            `eventKind`, lacks `toolName` for tool events, or carries
            non-integer token counts.
    """
    if not isinstance(data, dict):
        raise EventValidationError("Event must be a JSON object")

    raw_kind = data.get("eventKind")
    if raw_kind is None:
        raise EventValidationError("Event is missing 'eventKind'")
    try:
        kind = EventKind(raw_kind)
    except ValueError:
        raise EventValidationError(f"Unknown eventKind: {raw_kind!r}") from None

    session_id = _session_id(data)

    if kind is EventKind.PROMPT_SUBMITTED:
        prompt = data.get("prompt")
        return PromptSubmitted(session_id, prompt if isinstance(prompt, str) else "")
    if kind is EventKind.TOOL_STARTING:
        return ToolStarting(session_id, _tool_name(data, kind), data.get("toolInput"))
    if kind is EventKind.TOOL_FINISHED:
        return ToolFinished(
            session_id,
            _tool_name(data, kind),
            tool_input=data.get("toolInput"),
            tool_output=data.get("toolOutput"),
            success=_flag(data, "success", True),
        )
    if kind is EventKind.CONTEXT_COMPACTED:
        return ContextCompacted(
            session_id,
            tokens_before=_token_count(data, "tokensBefore"),
            tokens_after=_token_count(data, "tokensAfter"),
            compaction_type=_text(data, "compactionType", "auto"),
            trigger_reason=_text(data, "triggerReason", "threshold"),
        )
    transcript = data.get("transcriptPath")
    return SessionStopped(
        session_id,
        transcript_path=str(transcript) if transcript else None,
        was_interrupted=_flag(data, "wasInterrupted", False),
    )


class EventDispatcher:
    """Routes decoded events to a collector's handlers.

    Owns no state of its own.
    """

    def __init__(self, collector: TelemetryCollector):
        self.collector = collector

    def decode(self, payload: Any) -> Event | None:
        """Decode a payload, logging and dropping it if invalid.

        Returns:
            The decoded event, or None if it was rejected.
        """
        try:
            return decode_event(payload)
        except EventValidationError as e:
            logger.warning(f"Dropping invalid event: {e}")
            return None

    def dispatch(self, payload: Any) -> bool:
        """Validate, decode and handle one event payload.

        Validation failures are logged and the event is dropped without
        side effects.

        Returns:
            True if the event was handled, False if it was rejected.

        Raises:
            LedgerWriteError: If a record could not be written.
        """
        event = self.decode(payload)
        if event is None:
            return False
        self.handle(event)
        return True

    def handle(self, event: Event) -> None:
        """Invoke the collector handler for a decoded event."""
        logger.debug(f"Dispatching {type(event).__name__} for session {event.session_id}")
        if isinstance(event, PromptSubmitted):
            self.collector.on_prompt_submitted(event)
        elif isinstance(event, ToolStarting):
            self.collector.on_tool_starting(event)
        elif isinstance(event, ToolFinished):
            self.collector.on_tool_finished(event)
        elif isinstance(event, ContextCompacted):
            self.collector.on_context_compacted(event)
        elif isinstance(event, SessionStopped):
            self.collector.on_session_stopped(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")
