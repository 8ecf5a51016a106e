"""Agent runtime hook bridge.

Receives one lifecycle event per invocation as JSON on stdin and records it.

Usage:
    python -m hookledger.hooks.bridge

Architecture:
    Agent runtime hook (UserPromptSubmit, PreToolUse, PostToolUse, PreCompact, Stop)
            ↓ JSON via stdin
    Bridge script (this module)
            ↓ normalized event
    hookledger EventDispatcher
            ↓
    TelemetryCollector → <data_dir>/*.csv ledgers

Exit codes:
    0 on success, empty input or a closed output pipe.
    1 on oversized or malformed input, an invalid event, or a failed write.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, BinaryIO

from hookledger.config import Config
from hookledger.events import EventDispatcher
from hookledger.logs import configure_logging
from hookledger.metrics.collector import TelemetryCollector
from hookledger.metrics.ledger import LedgerWriteError

logger = logging.getLogger(__name__)

HOOK_EVENT_KINDS = {
    "UserPromptSubmit": "PromptSubmitted",
    "PreToolUse": "ToolStarting",
    "PostToolUse": "ToolFinished",
    "PreCompact": "ContextCompacted",
    "Stop": "SessionStopped",
}


class InputTooLargeError(ValueError):
    """Raised when stdin carries more than the configured maximum."""


def read_stdin(max_bytes: int, stream: BinaryIO | None = None) -> str:
    """Read the event from stdin without buffering more than max_bytes + 1.

    Raises:
        InputTooLargeError: If the input exceeds max_bytes.
        UnicodeDecodeError: If the input is not UTF-8.
    """
    if stream is None:
        stream = sys.stdin.buffer
    data = stream.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise InputTooLargeError(f"Input exceeds {max_bytes} bytes")
    return data.decode("utf-8")


def detect_failure(tool_response: Any) -> tuple[bool, str | None]:
    """Detect if a tool response indicates failure.

    Args:
        tool_response: The tool_response value from the hook.

    Returns:
        Tuple of (is_failed, error_message).
    """
    if isinstance(tool_response, dict):
        if tool_response.get("error"):
            return True, str(tool_response["error"])

        success = tool_response.get("success")
        if success is False or str(success).lower() == "false":
            error = tool_response.get("message", "Tool reported failure")
            return True, str(error)

        if tool_response.get("is_error"):
            error = tool_response.get("content", "Tool error")
            return True, str(error)

    return False, None


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_hook_payload(data: Any) -> Any:
    """Map a runtime hook payload to the canonical event form.

    Payloads that already carry `eventKind`, and anything that is not a
    recognized hook payload, are returned unchanged.
    """
    if not isinstance(data, dict) or "eventKind" in data:
        return data

    kind = HOOK_EVENT_KINDS.get(data.get("hook_event_name", ""))
    if kind is None:
        return data

    event: dict[str, Any] = {"eventKind": kind, "sessionId": data.get("session_id")}

    if kind == "PromptSubmitted":
        event["prompt"] = data.get("prompt", "")
    elif kind == "ToolStarting":
        event["toolName"] = data.get("tool_name")
        event["toolInput"] = data.get("tool_input")
    elif kind == "ToolFinished":
        tool_response = _first(data, "tool_response", "tool_output")
        is_failed, error = detect_failure(tool_response)
        if is_failed:
            logger.debug(f"{data.get('tool_name')} reported failure: {error}")
        event["toolName"] = data.get("tool_name")
        event["toolInput"] = data.get("tool_input")
        event["toolOutput"] = tool_response
        event["success"] = not is_failed
    elif kind == "ContextCompacted":
        event["tokensBefore"] = _first(data, "tokens_before", "context_window_before")
        event["tokensAfter"] = _first(data, "tokens_after", "context_window_after")
        event["compactionType"] = _first(data, "compaction_type", "type", "trigger")
        event["triggerReason"] = _first(data, "trigger_reason", "reason")
    elif kind == "SessionStopped":
        event["transcriptPath"] = data.get("transcript_path")
        event["wasInterrupted"] = data.get("was_interrupted", False)

    return event


def record_event(config: Config, stream: BinaryIO | None = None) -> int:
    """Read one event from stdin and record it.

    Args:
        config: Loaded configuration.
        stream: Binary input stream. Defaults to stdin.

    Returns:
        Process exit code.
    """
    try:
        raw = read_stdin(config.input.max_bytes, stream)
    except InputTooLargeError as e:
        logger.error(f"Rejecting event: {e}")
        return 1
    except UnicodeDecodeError as e:
        logger.error(f"Rejecting event: input is not UTF-8 ({e})")
        return 1

    if not raw.strip():
        return 0

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Rejecting event: invalid JSON ({e})")
        return 1

    collector = TelemetryCollector.from_config(config)
    dispatcher = EventDispatcher(collector)
    event = dispatcher.decode(normalize_hook_payload(payload))
    if event is None:
        return 1

    try:
        collector.ledger.initialize()
        dispatcher.handle(event)
    except LedgerWriteError as e:
        logger.error(f"Failed to write ledger: {e}")
        return 1
    except BrokenPipeError:
        raise
    except OSError as e:
        logger.error(f"Failed to record event: {e}")
        return 1

    return 0


def main() -> int:
    """Main entry point for the bridge.

    Returns:
        Process exit code.
    """
    try:
        config = Config.load_or_default()
    except (ValueError, OSError) as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(config.logging.level_number, config.log_file)

    try:
        return record_event(config)
    except BrokenPipeError:
        # Python flushes stdout at exit; point it at devnull so that fails quietly
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 0


if __name__ == "__main__":
    sys.exit(main())
