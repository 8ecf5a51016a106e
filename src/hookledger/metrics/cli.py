"""CLI commands for ledgers, session state and costs.

This module provides the command handlers for:
- init: Create or migrate every ledger
- sessions: List the latest session rows
- state show: Print a session's persisted state
- state prune: Remove old state files
- cost: Price a token usage tuple
"""

from __future__ import annotations

import json
import sys
from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import argparse


def format_number(n: int) -> str:
    """Format a number with thousands separators."""
    return f"{n:,}"


def format_cost(cost: float) -> str:
    """Format a USD amount."""
    return f"${cost:.6f}"


def format_cost_cell(value: str | None) -> str:
    """Format a cost column read back from a ledger."""
    try:
        return format_cost(float(value or 0))
    except ValueError:
        return value or "N/A"


def cmd_init(args: argparse.Namespace) -> int:
    """Handle 'init' command - create or migrate ledgers."""
    from hookledger.config import Config
    from hookledger.metrics.ledger import LedgerWriter

    try:
        config = Config.load_or_default()
        writer = LedgerWriter(
            config.data_dir,
            max_retries=config.ledger.max_retries,
            retry_delay=config.ledger.retry_delay_ms / 1000,
        )
        statuses = writer.initialize()
    except Exception as e:
        print(f"Error initializing ledgers: {e}", file=sys.stderr)
        return 1

    print(f"Ledgers in {config.data_dir}:")
    width = max(len(c) for c in statuses)
    for category, status in statuses.items():
        print(f"  {category.ljust(width)}  {status}")
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    """Handle 'sessions' command - list latest session rows."""
    from hookledger.config import Config
    from hookledger.metrics.reader import LedgerReader

    limit = getattr(args, "limit", 20)

    try:
        config = Config.load_or_default()
        sessions = LedgerReader(config.data_dir).latest_sessions()
    except Exception as e:
        print(f"Error reading sessions: {e}", file=sys.stderr)
        return 1

    if not sessions:
        print("No sessions recorded.")
        return 0

    print(f"=== Sessions ({min(limit, len(sessions))} of {len(sessions)}) ===")
    for row in sessions[:limit]:
        flag = " (interrupted)" if row.get("interrupted") == "1" else ""
        print(f"{row.get('session_id')}{flag}")
        print(f"  Repo: {row.get('repo_name')} [{row.get('branch')}]")
        print(f"  User: {row.get('user_id')}")
        print(f"  Started: {row.get('started_at') or 'N/A'}  Ended: {row.get('ended_at')}")
        print(f"  Turns: {row.get('turn_count')}  Cost: {format_cost_cell(row.get('total_cost_usd'))}")
    return 0


def cmd_state_show(args: argparse.Namespace) -> int:
    """Handle 'state show' command - print persisted state."""
    from hookledger.config import Config
    from hookledger.state import SessionStateStore

    try:
        config = Config.load_or_default()
        store = SessionStateStore(config.state_dir)
        path = store.path_for(args.session_id)
        if not path.exists():
            print(f"No state for session: {args.session_id}", file=sys.stderr)
            return 1
        state = store.load(args.session_id)
    except Exception as e:
        print(f"Error reading state: {e}", file=sys.stderr)
        return 1

    print(json.dumps(state.to_dict(), indent=2))
    return 0


def cmd_state_prune(args: argparse.Namespace) -> int:
    """Handle 'state prune' command - remove old state files."""
    from hookledger.config import Config
    from hookledger.state import SessionStateStore

    dry_run = getattr(args, "dry_run", False)

    try:
        config = Config.load_or_default()
        days = args.older_than if args.older_than is not None else config.state.retention_days
        store = SessionStateStore(config.state_dir)
        pruned = store.prune(timedelta(days=days), dry_run=dry_run)
    except Exception as e:
        print(f"Error pruning state: {e}", file=sys.stderr)
        return 1

    action = "Would remove" if dry_run else "Removed"
    print(f"{action} {len(pruned)} state file(s) older than {days} days")
    for path in pruned:
        print(f"  {path.name}")
    return 0


def cmd_cost(args: argparse.Namespace) -> int:
    """Handle 'cost' command - print a cost breakdown."""
    from hookledger.config import Config
    from hookledger.metrics.pricing import TokenUsage, calculate_cost

    try:
        config = Config.load_or_default()
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1

    usage = TokenUsage(
        input_tokens=args.input,
        output_tokens=args.output,
        cache_write_tokens=args.cache_write,
        cache_read_tokens=args.cache_read,
    )
    cost = calculate_cost(usage, args.model, config.pricing.default_model)

    if cost.model != args.model:
        print(f"Unknown model {args.model}; priced as {cost.model}")
    print(f"=== Cost ({cost.model}, {cost.tier} tier) ===")
    rows = [
        ("Input", usage.input_tokens, cost.input_cost),
        ("Output", usage.output_tokens, cost.output_cost),
        ("Cache write", usage.cache_write_tokens, cost.cache_write_cost),
        ("Cache read", usage.cache_read_tokens, cost.cache_read_cost),
    ]
    for label, tokens, amount in rows:
        print(f"  {label.ljust(11)}  {format_number(tokens).rjust(12)}  {format_cost(amount)}")
    print(f"  {'Total'.ljust(11)}  {format_number(usage.total_tokens).rjust(12)}  {format_cost(cost.total_cost)}")
    return 0
