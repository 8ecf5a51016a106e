"""Repository and user identity, resolved through the git CLI and cached.

Each git call has a short timeout. When git is unavailable or a call fails,
the affected field is reported as "unknown" rather than raising.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
GIT_TIMEOUT = 2  # seconds

_SHORTSTAT_PATTERN = re.compile(
    r"(\d+) files? changed(?:, (\d+) insertions?\(\+\))?(?:, (\d+) deletions?\(-\))?"
)


@dataclass
class RepoContext:
    """Identity of the user and repository an event belongs to."""

    user_id: str = UNKNOWN
    repo_url: str = UNKNOWN
    repo_name: str = UNKNOWN
    branch: str = UNKNOWN
    head_commit: str = UNKNOWN

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepoContext:
        return cls(**{k: str(data.get(k, UNKNOWN)) for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class CommitInfo:
    """Facts about one commit."""

    sha: str
    message: str
    author_email: str
    committed_at: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def total_lines_changed(self) -> int:
        return self.insertions + self.deletions


def repo_name_from_url(url: str) -> str:
    """Derive a repository name from its remote URL.

    Examples:
        git@github.com:acme/widgets.git -> widgets
        https://github.com/acme/widgets -> widgets
    """
    if not url or url == UNKNOWN:
        return UNKNOWN
    name = re.split(r"[/:]", url.rstrip("/"))[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or UNKNOWN


def parse_shortstat(text: str) -> tuple[int, int, int]:
    """Parse git's "N files changed, N insertions(+), N deletions(-)" line.

    Returns:
        Tuple of (files_changed, insertions, deletions); zeros if absent.
    """
    match = _SHORTSTAT_PATTERN.search(text)
    if not match:
        return 0, 0, 0
    return tuple(int(g) if g else 0 for g in match.groups())  # type: ignore[return-value]


class GitClient:
    """Runs read-only git commands in a working directory."""

    def __init__(self, cwd: Path, timeout: float = GIT_TIMEOUT):
        self.cwd = Path(cwd)
        self.timeout = timeout

    def run(self, *args: str) -> str | None:
        """Run a git command.

        Returns:
            Stripped stdout, or None if git failed, timed out or is missing.
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"git {' '.join(args)} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()


class RepoContextCache:
    """Resolves RepoContext, caching results per working directory.

    The cache is a JSON file mapping working directory to the resolved
    context and the time it was resolved. Entries older than `ttl` seconds
    are resolved again.
    """

    def __init__(
        self,
        cache_file: Path,
        ttl: int = 300,
        git: GitClient | None = None,
        cwd: Path | None = None,
        environ: dict[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_file = Path(cache_file)
        self.ttl = ttl
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.git = git or GitClient(self.cwd)
        self.environ = environ if environ is not None else dict(os.environ)
        self.clock = clock

    def get(self) -> RepoContext:
        """Get the context for the working directory, from cache if fresh."""
        key = str(self.cwd)
        cache = self._read_cache()
        entry = cache.get(key)
        if isinstance(entry, dict) and self.clock() - entry.get("resolved_at", 0) < self.ttl:
            return RepoContext.from_dict(entry.get("context", {}))

        context = self.resolve()
        cache[key] = {"resolved_at": self.clock(), "context": asdict(context)}
        self._write_cache(cache)
        return context

    def resolve(self) -> RepoContext:
        """Resolve the context from git and the environment, uncached."""
        user_id = (
            self.git.run("config", "user.email")
            or self.git.run("config", "user.name")
            or self.environ.get("USER")
            or self.environ.get("USERNAME")
            or UNKNOWN
        )
        repo_url = self.git.run("remote", "get-url", "origin") or UNKNOWN
        return RepoContext(
            user_id=user_id,
            repo_url=repo_url,
            repo_name=repo_name_from_url(repo_url),
            branch=self.git.run("branch", "--show-current") or UNKNOWN,
            head_commit=self.git.run("rev-parse", "HEAD") or UNKNOWN,
        )

    def latest_commit(self) -> CommitInfo | None:
        """Read the HEAD commit, or None if it cannot be read."""
        output = self.git.run("log", "-1", "--format=%H%n%ae%n%aI%n%s")
        if not output:
            return None
        lines = output.splitlines()
        if len(lines) < 4:
            return None
        sha, email, committed_at, message = lines[0], lines[1], lines[2], lines[3]

        stat = self.git.run("show", "--shortstat", "--format=", sha) or ""
        files_changed, insertions, deletions = parse_shortstat(stat)
        return CommitInfo(
            sha=sha,
            message=message,
            author_email=email or UNKNOWN,
            committed_at=committed_at,
            files_changed=files_changed,
            insertions=insertions,
            deletions=deletions,
        )

    def invalidate(self) -> None:
        """Drop the cached entry for the working directory."""
        cache = self._read_cache()
        if cache.pop(str(self.cwd), None) is not None:
            self._write_cache(cache)

    def _read_cache(self) -> dict[str, Any]:
        try:
            with open(self.cache_file, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable repo cache {self.cache_file}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_cache(self, cache: dict[str, Any]) -> None:
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.cache_file.name}.", dir=self.cache_file.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(cache, f, indent=2)
            os.replace(tmp_name, self.cache_file)
        except OSError as e:
            # The cache is an optimization; the context was still resolved
            logger.warning(f"Cannot write repo cache {self.cache_file}: {e}")
