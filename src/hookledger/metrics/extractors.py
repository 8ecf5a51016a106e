"""Field extraction from tool payloads.

Tool inputs and outputs arrive as arbitrary JSON. This module measures them
and pulls out the few fields the ledgers care about, such as the shell
command of a Bash invocation and any git activity it performs.
"""

from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass
from typing import Any

SHELL_TOOL = "Bash"

GIT_OPERATIONS = ("push", "pull", "fetch", "clone", "merge")

_GIT_OPERATION_PATTERN = re.compile(
    r"(?:^|[;&|(]\s*|\s)git\s+(?:-[cC]\s+\S+\s+)*(" + "|".join(GIT_OPERATIONS) + r")\b(.*)"
)
_GIT_COMMIT_PATTERN = re.compile(r"(?:^|[;&|(]\s*|\s)git\s+(?:-[cC]\s+\S+\s+)*commit\b")
_COMMAND_SEPARATORS = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")


def payload_size(value: Any) -> int:
    """Size in characters of a payload serialized as compact JSON.

    Strings are measured as-is; None counts as zero.
    """
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value)
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str))


def extract_bash_command(tool_input: Any) -> str | None:
    """Extract the command string from Bash tool input.

    Args:
        tool_input: The tool input, usually a dict with a "command" key.

    Returns:
        The command, or None if absent.
    """
    if isinstance(tool_input, dict):
        command = tool_input.get("command")
        if isinstance(command, str) and command.strip():
            return command
    return None


@dataclass(frozen=True)
class GitOperation:
    """A git network or merge operation found in a shell command."""

    operation_type: str
    remote: str
    branch: str


def _positional_args(rest: str) -> list[str]:
    # Only the first command of a chain belongs to this git invocation
    segment = _COMMAND_SEPARATORS.split(rest.strip(), maxsplit=1)[0]
    try:
        tokens = shlex.split(segment)
    except ValueError:
        tokens = segment.split()
    return [t for t in tokens if not t.startswith("-")]


def extract_git_operation(command: str, default_branch: str) -> GitOperation | None:
    """Detect a git push, pull, fetch, clone or merge in a shell command.

    Remote and branch are taken from the first non-option arguments. For
    merges the only positional argument is the branch being merged.

    Args:
        command: Shell command text.
        default_branch: Branch reported when the command names none.

    Returns:
        GitOperation, or None if the command performs no such operation.
    """
    match = _GIT_OPERATION_PATTERN.search(command)
    if not match:
        return None

    operation = match.group(1)
    args = _positional_args(match.group(2))

    if operation == "merge":
        return GitOperation(operation, "", args[0] if args else default_branch)
    if operation == "clone":
        return GitOperation(operation, args[0] if args else "origin", default_branch)

    remote = args[0] if args else "origin"
    branch = args[1] if len(args) > 1 else default_branch
    return GitOperation(operation, remote, branch)


def is_git_commit(command: str) -> bool:
    """Check whether a shell command runs `git commit`."""
    return bool(_GIT_COMMIT_PATTERN.search(command))
