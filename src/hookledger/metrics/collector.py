"""Turn and tool state machine that turns lifecycle events into records.

Each handler loads the session's state, applies the event, appends the
resulting rows to the ledgers and persists the state again. The collector
holds no per-session data between calls; everything lives in the state
store, so handlers work the same whether or not the process is reused.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from hookledger.events import (
    ContextCompacted,
    PromptSubmitted,
    SessionStopped,
    ToolFinished,
    ToolStarting,
)
from hookledger.metrics.classifier import classify_prompt
from hookledger.metrics.extractors import (
    SHELL_TOOL,
    extract_bash_command,
    extract_git_operation,
    is_git_commit,
    payload_size,
)
from hookledger.metrics.ledger import LedgerWriter
from hookledger.metrics.pricing import DEFAULT_MODEL, calculate_cost
from hookledger.metrics.records import (
    CommitRecord,
    CompactionRecord,
    CostRecord,
    GitOperationRecord,
    PromptRecord,
    SessionRecord,
    ToolInvocationRecord,
    TurnRecord,
)
from hookledger.metrics.transcript import last_usage_entry
from hookledger.repo import RepoContext, RepoContextCache
from hookledger.state import SessionState, SessionStateStore

if TYPE_CHECKING:
    from hookledger.config import Config

logger = logging.getLogger(__name__)

REPO_CACHE_FILE = "repo_context.json"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TelemetryCollector:
    """Applies lifecycle events to session state and writes ledger rows.

    Attributes:
        ledger: Destination for records.
        states: Store for per-session state.
        repo: Source of user and repository identity.
        default_model: Model whose pricing applies to unknown models.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        ledger: LedgerWriter,
        states: SessionStateStore,
        repo: RepoContextCache,
        default_model: str = DEFAULT_MODEL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.states = states
        self.repo = repo
        self.default_model = default_model
        self.clock = clock

    @classmethod
    def from_config(cls, config: Config, cwd: Path | None = None) -> TelemetryCollector:
        """Build a collector wired to the configured directories."""
        data_dir = config.data_dir
        return cls(
            ledger=LedgerWriter(
                data_dir,
                max_retries=config.ledger.max_retries,
                retry_delay=config.ledger.retry_delay_ms / 1000,
            ),
            states=SessionStateStore(config.state_dir),
            repo=RepoContextCache(
                data_dir / REPO_CACHE_FILE,
                ttl=config.state.repo_cache_ttl,
                cwd=cwd,
            ),
            default_model=config.pricing.default_model,
        )

    def on_prompt_submitted(self, event: PromptSubmitted) -> None:
        """Finalize the open turn, start the next one and classify the prompt."""
        now = self.clock()
        state = self.states.load(event.session_id)
        state.touch(now)
        context = self.repo.get()

        if state.turn_open:
            self._finalize_turn(state, context, now, interrupted=False)
        state.start_turn(now)
        self.states.save(state)

        if not event.prompt.strip():
            return
        result = classify_prompt(event.prompt)
        self.ledger.write(
            PromptRecord(
                session_id=state.session_id,
                user_id=context.user_id,
                turn_number=state.turn_number,
                category_name=result.category,
                subcategory=result.subcategory,
                prompt_length=len(event.prompt.strip()),
                timestamp=now,
            )
        )

    def on_tool_starting(self, event: ToolStarting) -> None:
        """Register a started tool under a fresh key."""
        now = self.clock()
        state = self.states.load(event.session_id)
        state.touch(now)

        command = extract_bash_command(event.tool_input) if event.tool_name == SHELL_TOOL else None
        key = state.start_tool(
            event.tool_name,
            now,
            input_size=payload_size(event.tool_input),
            command=command,
        )
        logger.debug(f"Started {event.tool_name} as #{key} in session {state.session_id}")
        self.states.save(state)

    def on_tool_finished(self, event: ToolFinished) -> None:
        """Emit a tool row for the matching start and check for git activity."""
        now = self.clock()
        state = self.states.load(event.session_id)
        state.touch(now)
        context = self.repo.get()

        started = state.finish_tool(event.tool_name)
        if started is None:
            logger.warning(
                f"No matching start for {event.tool_name} in session {state.session_id}; "
                f"dropping completion"
            )
        else:
            elapsed_ms = int((now - started.started_at).total_seconds() * 1000)
            self.ledger.write(
                ToolInvocationRecord(
                    session_id=state.session_id,
                    user_id=context.user_id,
                    turn_number=started.turn_number,
                    tool_name=event.tool_name,
                    started_at=started.started_at,
                    completed_at=now,
                    success=event.success,
                    processing_time_ms=max(0, elapsed_ms),
                    input_size=started.input_size,
                    output_size=payload_size(event.tool_output),
                )
            )

        if event.tool_name == SHELL_TOOL:
            command = extract_bash_command(event.tool_input)
            if command is None and started is not None:
                command = started.command
            if command:
                self._record_git_activity(state, context, command, event.success, now)

        self.states.save(state)

    def on_context_compacted(self, event: ContextCompacted) -> None:
        """Emit a compaction row for the current turn."""
        now = self.clock()
        state = self.states.load(event.session_id)
        state.touch(now)
        context = self.repo.get()

        reduction = event.tokens_before - event.tokens_after
        if event.tokens_before > 0:
            percent = reduction / event.tokens_before * 100
        else:
            percent = 0.0

        self.ledger.write(
            CompactionRecord(
                session_id=state.session_id,
                user_id=context.user_id,
                turn_number=state.current_turn,
                timestamp=now,
                tokens_before=event.tokens_before,
                tokens_after=event.tokens_after,
                reduction_tokens=reduction,
                reduction_percent=f"{percent:.2f}",
                compaction_type=event.compaction_type,
                trigger_reason=event.trigger_reason,
            )
        )
        self.states.save(state)

    def on_session_stopped(self, event: SessionStopped) -> None:
        """Cost the last message, close an interrupted turn, write the session row.

        State is persisted last, after every row has been written.
        """
        now = self.clock()
        state = self.states.load(event.session_id)
        state.touch(now)
        context = self.repo.get()

        if event.transcript_path:
            self._record_cost(state, context, Path(event.transcript_path).expanduser(), now)

        if event.was_interrupted and state.turn_open:
            self._finalize_turn(state, context, now, interrupted=True)

        self.ledger.write(
            SessionRecord(
                session_id=state.session_id,
                user_id=context.user_id,
                repo_url=context.repo_url,
                repo_name=context.repo_name,
                branch=context.branch,
                head_commit=context.head_commit,
                started_at=state.session_started_at,
                ended_at=now,
                turn_count=state.turn_number,
                total_cost_usd=state.session_cost,
                interrupted=event.was_interrupted,
            )
        )
        self.states.save(state)

    def _finalize_turn(
        self,
        state: SessionState,
        context: RepoContext,
        now: datetime,
        interrupted: bool,
    ) -> None:
        self.ledger.write(
            TurnRecord(
                session_id=state.session_id,
                user_id=context.user_id,
                turn_number=state.turn_number,
                started_at=state.turn_started_at,
                ended_at=now,
                tool_count=state.tool_count,
                total_cost_usd=state.turn_cost,
                interrupted=interrupted,
            )
        )
        state.turn_open = False

    def _record_cost(
        self,
        state: SessionState,
        context: RepoContext,
        transcript_path: Path,
        now: datetime,
    ) -> None:
        # Only the final usage entry is costed, not the whole transcript
        entry = last_usage_entry(transcript_path)
        if entry is None:
            return

        cost = calculate_cost(entry.usage, entry.model, self.default_model)
        self.ledger.write(
            CostRecord(
                session_id=state.session_id,
                user_id=context.user_id,
                turn_number=state.current_turn,
                message_id=entry.message_id,
                model=entry.model or cost.model,
                input_tokens=entry.usage.input_tokens,
                output_tokens=entry.usage.output_tokens,
                cache_write_tokens=entry.usage.cache_write_tokens,
                cache_read_tokens=entry.usage.cache_read_tokens,
                total_tokens=entry.usage.total_tokens,
                pricing_tier=cost.tier,
                input_cost_usd=cost.input_cost,
                output_cost_usd=cost.output_cost,
                cache_write_cost_usd=cost.cache_write_cost,
                cache_read_cost_usd=cost.cache_read_cost,
                total_cost_usd=cost.total_cost,
                timestamp=entry.recorded_at() or now,
            )
        )
        state.add_cost(cost.total_cost)

    def _record_git_activity(
        self,
        state: SessionState,
        context: RepoContext,
        command: str,
        success: bool,
        now: datetime,
    ) -> None:
        operation = extract_git_operation(command, default_branch=context.branch)
        if operation is not None:
            self.ledger.write(
                GitOperationRecord(
                    session_id=state.session_id,
                    user_id=context.user_id,
                    turn_number=state.current_turn,
                    operation_type=operation.operation_type,
                    branch=operation.branch,
                    remote=operation.remote,
                    timestamp=now,
                    success=success,
                )
            )

        if not (success and is_git_commit(command)):
            return

        commit = self.repo.latest_commit()
        if commit is None:
            logger.warning(f"Could not read HEAD after git commit in session {state.session_id}")
            return
        if commit.sha == state.last_commit_sha:
            logger.debug(f"Commit {commit.sha} already recorded")
            return

        self.ledger.write(
            CommitRecord(
                commit_sha=commit.sha,
                session_id=state.session_id,
                user_id=context.user_id,
                repo_name=context.repo_name,
                branch=context.branch,
                commit_message=commit.message,
                author_email=commit.author_email,
                committed_at=commit.committed_at,
                files_changed=commit.files_changed,
                insertions=commit.insertions,
                deletions=commit.deletions,
                total_lines_changed=commit.total_lines_changed,
            )
        )
        state.last_commit_sha = commit.sha
        # HEAD moved, so the cached context is stale
        self.repo.invalidate()
