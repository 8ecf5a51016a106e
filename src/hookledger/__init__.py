"""hookledger - Usage ledgers for AI coding-assistant sessions.

hookledger turns the lifecycle events of an agent session (prompts, tool
calls, compactions, stops) into append-only CSV ledgers of turns, tool
invocations, token costs, prompt categories and git activity.
"""

__version__ = "0.1.0"

from hookledger.events import EventKind, EventDispatcher, decode_event
from hookledger.config import Config

__all__ = [
    "EventKind",
    "EventDispatcher",
    "decode_event",
    "Config",
]
