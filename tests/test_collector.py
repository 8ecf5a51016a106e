"""Tests for the turn/tool state machine."""

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from hookledger.events import (
    ContextCompacted,
    PromptSubmitted,
    SessionStopped,
    ToolFinished,
    ToolStarting,
)
from hookledger.metrics.collector import TelemetryCollector
from hookledger.metrics.ledger import LedgerWriter
from hookledger.metrics.reader import LedgerReader
from hookledger.repo import CommitInfo, RepoContext
from hookledger.state import SessionStateStore

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
SONNET = "claude-sonnet-4-5-20250929"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeRepo:
    """RepoContextCache stand-in without git."""

    def __init__(self):
        self.context = RepoContext(
            user_id="dev@example.com",
            repo_url="git@github.com:acme/widgets.git",
            repo_name="widgets",
            branch="main",
            head_commit="a1b2c3",
        )
        self.commit = None
        self.invalidations = 0

    def get(self):
        return self.context

    def latest_commit(self):
        return self.commit

    def invalidate(self):
        self.invalidations += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def make_collector(tmp_path, clock, repo):
    """Build a fresh collector over the same directories, like a new process."""

    def factory():
        return TelemetryCollector(
            ledger=LedgerWriter(tmp_path / "data", retry_delay=0),
            states=SessionStateStore(tmp_path / "state"),
            repo=repo,
            clock=clock,
        )

    return factory


@pytest.fixture
def collector(make_collector):
    return make_collector()


@pytest.fixture
def rows(tmp_path):
    reader = LedgerReader(tmp_path / "data")
    return lambda category: list(reader.rows(category))


def write_transcript(path, *usages):
    lines = []
    for i, (input_tokens, output_tokens) in enumerate(usages, start=1):
        lines.append(
            json.dumps(
                {
                    "type": "assistant",
                    "message": {
                        "id": f"msg_{i}",
                        "model": SONNET,
                        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
                    },
                }
            )
        )
    path.write_text("\n".join(lines) + "\n")
    return str(path)


class TestTurns:
    """Tests for turn lifecycle."""

    def test_one_turn_with_one_tool(self, collector, clock, rows):
        """Test prompt, tool start, tool end, prompt yields one finished turn."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "list the files"))
        clock.advance(1)
        collector.on_tool_starting(ToolStarting("s1", "Bash", {"command": "ls"}))
        clock.advance(2)
        collector.on_tool_finished(ToolFinished("s1", "Bash", {"command": "ls"}, "a\nb"))
        clock.advance(1)
        collector.on_prompt_submitted(PromptSubmitted("s1", "now explain them"))

        turns = rows("turns")
        assert len(turns) == 1
        assert turns[0]["turn_number"] == "1"
        assert turns[0]["tool_count"] == "1"
        assert turns[0]["interrupted"] == "0"
        assert turns[0]["started_at"] == "2025-01-01T12:00:00.000Z"
        assert turns[0]["ended_at"] == "2025-01-01T12:00:04.000Z"

    def test_turns_increase_across_restarts(self, make_collector, clock, rows):
        """Test gap-free turn numbers when every event runs in a new process."""
        for i in range(4):
            make_collector().on_prompt_submitted(PromptSubmitted("s1", f"prompt {i}"))
            clock.advance(10)
        make_collector().on_session_stopped(SessionStopped("s1", None, was_interrupted=True))

        numbers = [int(t["turn_number"]) for t in rows("turns")]
        assert numbers == [1, 2, 3, 4]
        assert [t["interrupted"] for t in rows("turns")] == ["0", "0", "0", "1"]

    def test_sessions_are_independent(self, collector, rows):
        """Test that turn numbers are per session."""
        collector.on_prompt_submitted(PromptSubmitted("a", "one"))
        collector.on_prompt_submitted(PromptSubmitted("b", "one"))
        collector.on_prompt_submitted(PromptSubmitted("a", "two"))
        collector.on_prompt_submitted(PromptSubmitted("b", "two"))

        assert [(t["session_id"], t["turn_number"]) for t in rows("turns")] == [("a", "1"), ("b", "1")]

    def test_ids_differing_in_unsafe_characters_are_independent(self, collector, rows):
        """Test that ids which sanitize alike keep their own turns."""
        collector.on_prompt_submitted(PromptSubmitted("a/b", "one"))
        collector.on_prompt_submitted(PromptSubmitted("a_b", "one"))

        assert [(p["session_id"], p["turn_number"]) for p in rows("prompts")] == [
            ("a/b", "1"),
            ("a_b", "1"),
        ]

    def test_tool_count_resets_per_turn(self, collector, rows):
        """Test that tool counts do not carry into the next turn."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "first"))
        for _ in range(3):
            collector.on_tool_starting(ToolStarting("s1", "Read", {}))
        collector.on_prompt_submitted(PromptSubmitted("s1", "second"))
        collector.on_tool_starting(ToolStarting("s1", "Read", {}))
        collector.on_prompt_submitted(PromptSubmitted("s1", "third"))

        assert [t["tool_count"] for t in rows("turns")] == ["3", "1"]

    def test_state_persisted_after_prompt(self, collector, tmp_path):
        """Test that the new turn is saved immediately."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hello"))

        state = SessionStateStore(tmp_path / "state").load("s1")
        assert state.turn_number == 1
        assert state.turn_open is True


class TestPrompts:
    """Tests for prompt classification records."""

    def test_prompt_record(self, collector, rows):
        """Test that the category and length are recorded, not the text."""
        prompt = "fix the broken login validation and add a test"
        collector.on_prompt_submitted(PromptSubmitted("s1", prompt))

        (row,) = rows("prompts")
        assert row["category"] == "bug_fix"
        assert row["subcategory"] == "with_tests"
        assert row["prompt_length"] == str(len(prompt))
        assert row["turn_number"] == "1"
        assert prompt not in json.dumps(row)

    def test_blank_prompt_skips_record(self, collector, rows, tmp_path):
        """Test that blank prompts still start a turn but write no prompt row."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "   "))

        assert rows("prompts") == []
        assert SessionStateStore(tmp_path / "state").load("s1").turn_number == 1

    def test_prompt_length_ignores_surrounding_whitespace(self, collector, rows):
        """Test that leading and trailing whitespace is not counted."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "  explain this\n\n"))

        (row,) = rows("prompts")
        assert row["prompt_length"] == str(len("explain this"))


class TestTools:
    """Tests for tool invocation records."""

    def test_tool_row(self, collector, clock, rows):
        """Test the fields of a tool invocation row."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "read it"))
        collector.on_tool_starting(ToolStarting("s1", "Read", {"file_path": "a.py"}))
        clock.advance(1.5)
        collector.on_tool_finished(ToolFinished("s1", "Read", {"file_path": "a.py"}, "contents", success=False))

        (row,) = rows("tool_usage")
        assert row["tool_name"] == "Read"
        assert row["turn_number"] == "1"
        assert row["processing_time_ms"] == "1500"
        assert row["success"] == "0"
        assert row["input_size"] == str(len('{"file_path":"a.py"}'))
        assert row["output_size"] == str(len("contents"))

    def test_finish_without_start(self, collector, rows, caplog):
        """Test that an unmatched completion is dropped with a warning."""
        with caplog.at_level(logging.WARNING, logger="hookledger.metrics.collector"):
            collector.on_tool_finished(ToolFinished("s1", "Read", {}, "x"))

        assert rows("tool_usage") == []
        assert "No matching start" in caplog.text

    def test_lifo_matching(self, collector, clock, rows):
        """Test that completions match the most recent start of that tool."""
        collector.on_tool_starting(ToolStarting("s1", "Read", {}))
        clock.advance(5)
        collector.on_tool_starting(ToolStarting("s1", "Read", {}))
        clock.advance(1)
        collector.on_tool_finished(ToolFinished("s1", "Read", {}, ""))
        clock.advance(1)
        collector.on_tool_finished(ToolFinished("s1", "Read", {}, ""))

        assert [r["processing_time_ms"] for r in rows("tool_usage")] == ["1000", "7000"]

    def test_tool_before_any_prompt_is_turn_one(self, collector, rows):
        """Test the turn number used before the first prompt."""
        collector.on_tool_starting(ToolStarting("s1", "Glob", {}))
        collector.on_tool_finished(ToolFinished("s1", "Glob", {}, []))
        assert rows("tool_usage")[0]["turn_number"] == "1"


class TestGitActivity:
    """Tests for git operation and commit records."""

    def test_push_recorded(self, collector, rows):
        """Test that a push produces a git operation row."""
        command = {"command": "git push origin feature/login"}
        collector.on_tool_starting(ToolStarting("s1", "Bash", command))
        collector.on_tool_finished(ToolFinished("s1", "Bash", command, "ok"))

        (row,) = rows("git_operations")
        assert row["operation_type"] == "push"
        assert row["remote"] == "origin"
        assert row["branch"] == "feature/login"
        assert row["success"] == "1"

    def test_failed_pull_recorded_as_failure(self, collector, rows):
        """Test that the tool's success flag is carried over."""
        command = {"command": "git pull"}
        collector.on_tool_finished(ToolFinished("s1", "Bash", command, "conflict", success=False))

        (row,) = rows("git_operations")
        assert row["branch"] == "main"
        assert row["success"] == "0"

    def test_non_shell_tool_ignored(self, collector, rows):
        """Test that only the shell tool is inspected."""
        collector.on_tool_finished(ToolFinished("s1", "Write", {"command": "git push"}, ""))
        assert rows("git_operations") == []

    def test_commit_recorded_once(self, collector, repo, rows):
        """Test commit rows and duplicate suppression."""
        repo.commit = CommitInfo(
            sha="d4e5f6",
            message="Fix login",
            author_email="dev@example.com",
            committed_at="2025-01-01T12:00:00+00:00",
            files_changed=2,
            insertions=5,
            deletions=1,
        )
        command = {"command": "git commit -m 'Fix login'"}
        collector.on_tool_finished(ToolFinished("s1", "Bash", command, "ok"))
        collector.on_tool_finished(ToolFinished("s1", "Bash", command, "nothing to commit"))

        (row,) = rows("commits")
        assert row["commit_sha"] == "d4e5f6"
        assert row["repo_name"] == "widgets"
        assert row["total_lines_changed"] == "6"
        assert repo.invalidations == 1

    def test_failed_commit_ignored(self, collector, repo, rows):
        """Test that failed commits are not recorded."""
        repo.commit = CommitInfo("d4e5f6", "msg", "dev@example.com", "2025-01-01T12:00:00+00:00")
        collector.on_tool_finished(ToolFinished("s1", "Bash", {"command": "git commit"}, "", success=False))
        assert rows("commits") == []


class TestCompaction:
    """Tests for compaction records."""

    def test_reduction(self, collector, rows):
        """Test reduction amount and percentage."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_prompt_submitted(PromptSubmitted("s1", "again"))
        collector.on_context_compacted(ContextCompacted("s1", 1000, 250, "manual", "user_request"))

        (row,) = rows("compactions")
        assert row["turn_number"] == "2"
        assert row["reduction_tokens"] == "750"
        assert row["reduction_percent"] == "75.00"
        assert row["compaction_type"] == "manual"
        assert row["trigger_reason"] == "user_request"

    def test_zero_tokens_before(self, collector, rows):
        """Test that the percentage is zero when nothing was there."""
        collector.on_context_compacted(ContextCompacted("s1", 0, 0))

        (row,) = rows("compactions")
        assert row["reduction_percent"] == "0.00"
        assert row["turn_number"] == "1"


class TestSessionStop:
    """Tests for session stop handling."""

    def test_cost_from_transcript(self, collector, rows, tmp_path):
        """Test that the stop writes a cost row and adds it to the session."""
        transcript = write_transcript(tmp_path / "t.jsonl", (1_000_000, 0))
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_session_stopped(SessionStopped("s1", transcript))

        (cost,) = rows("costs")
        assert cost["model"] == SONNET
        assert cost["pricing_tier"] == "extended"
        assert cost["total_cost_usd"] == "6.0000000000"
        (session,) = rows("sessions")
        assert session["total_cost_usd"] == "6.0000000000"

    def test_cost_uses_last_usage_entry_only(self, collector, rows, tmp_path):
        """Test that only the final transcript entry is costed.

        Earlier entries are not summed; a session's cost reflects the last
        message seen at each stop.
        """
        transcript = write_transcript(tmp_path / "t.jsonl", (500_000, 100), (1000, 200))
        collector.on_session_stopped(SessionStopped("s1", transcript))

        (cost,) = rows("costs")
        assert cost["message_id"] == "msg_2"
        assert cost["input_tokens"] == "1000"
        assert cost["output_tokens"] == "200"
        assert cost["total_tokens"] == "1200"
        assert cost["pricing_tier"] == "standard"

    def test_cost_row_uses_transcript_timestamp(self, collector, rows, tmp_path):
        """Test that the cost row is dated by the transcript entry."""
        entry = {
            "type": "assistant",
            "timestamp": "2025-01-01T11:59:30.250Z",
            "message": {"id": "msg_1", "model": SONNET, "usage": {"input_tokens": 10}},
        }
        path = tmp_path / "t.jsonl"
        path.write_text(json.dumps(entry) + "\n")

        collector.on_session_stopped(SessionStopped("s1", str(path)))

        (cost,) = rows("costs")
        assert cost["timestamp"] == "2025-01-01T11:59:30.250Z"

    def test_cost_row_without_timestamp_uses_now(self, collector, rows, tmp_path):
        """Test the fallback when the transcript entry is undated."""
        transcript = write_transcript(tmp_path / "t.jsonl", (10, 5))
        collector.on_session_stopped(SessionStopped("s1", transcript))

        (cost,) = rows("costs")
        assert cost["timestamp"] == "2025-01-01T12:00:00.000Z"

    def test_stop_without_transcript_keeps_accumulated_cost(self, collector, rows, tmp_path):
        """Test that a later stop without transcript reports the prior cost."""
        transcript = write_transcript(tmp_path / "t.jsonl", (100_000, 0))
        collector.on_session_stopped(SessionStopped("s1", transcript))
        collector.on_session_stopped(SessionStopped("s1", None))

        sessions = rows("sessions")
        assert len(sessions) == 2
        assert sessions[1]["total_cost_usd"] == sessions[0]["total_cost_usd"] == "0.3000000000"
        assert len(rows("costs")) == 1

    def test_turn_cost_included_in_finalized_turn(self, collector, rows, tmp_path):
        """Test that stop costs count toward the open turn."""
        transcript = write_transcript(tmp_path / "t.jsonl", (100_000, 0))
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_session_stopped(SessionStopped("s1", transcript))
        collector.on_prompt_submitted(PromptSubmitted("s1", "next"))

        (turn,) = rows("turns")
        assert turn["total_cost_usd"] == "0.3000000000"

    def test_interrupted_stop_finalizes_turn(self, collector, rows):
        """Test that an interrupted stop closes the open turn."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_session_stopped(SessionStopped("s1", None, was_interrupted=True))

        (turn,) = rows("turns")
        assert turn["interrupted"] == "1"
        assert rows("sessions")[0]["interrupted"] == "1"

    def test_normal_stop_leaves_turn_open(self, collector, rows, tmp_path):
        """Test that a normal stop does not finalize the turn."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_session_stopped(SessionStopped("s1", None))

        assert rows("turns") == []
        assert SessionStateStore(tmp_path / "state").load("s1").turn_open is True

    def test_session_row(self, collector, clock, rows):
        """Test repository identity and timing on the session row."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_prompt_submitted(PromptSubmitted("s1", "more"))
        clock.advance(60)
        collector.on_session_stopped(SessionStopped("s1", None))

        (session,) = rows("sessions")
        assert session["user_id"] == "dev@example.com"
        assert session["repo_name"] == "widgets"
        assert session["branch"] == "main"
        assert session["head_commit"] == "a1b2c3"
        assert session["turn_count"] == "2"
        assert session["started_at"] == "2025-01-01T12:00:00.000Z"
        assert session["ended_at"] == "2025-01-01T12:01:00.000Z"

    def test_missing_transcript_file(self, collector, rows, tmp_path):
        """Test that a missing transcript only skips the cost row."""
        collector.on_session_stopped(SessionStopped("s1", str(tmp_path / "gone.jsonl")))

        assert rows("costs") == []
        assert len(rows("sessions")) == 1

    def test_state_kept_after_stop(self, collector, tmp_path):
        """Test that session state survives the stop."""
        collector.on_prompt_submitted(PromptSubmitted("s1", "hi"))
        collector.on_session_stopped(SessionStopped("s1", None))
        assert SessionStateStore(tmp_path / "state").path_for("s1").exists()
