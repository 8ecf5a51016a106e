"""CLI entry point for hookledger.

Usage:
    python -m hookledger <command> [options]

Commands:
    record
    init
    sessions [--limit N]
    state show <session-id>
    state prune [--older-than DAYS] [--dry-run]
    cost --model MODEL --input N --output N [--cache-write N] [--cache-read N]
    config validate
    config get <key>
"""

from __future__ import annotations

import argparse
import sys

from hookledger import __version__


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="hookledger",
        description="Usage ledgers for AI coding-assistant sessions",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # record command
    subparsers.add_parser("record", help="Record one event read from stdin")

    # init command
    subparsers.add_parser("init", help="Create or migrate all ledgers")

    # sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List recorded sessions")
    sessions_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum sessions to show (default: 20)",
    )

    # state command
    state_parser = subparsers.add_parser("state", help="Session state management")
    state_subparsers = state_parser.add_subparsers(dest="state_command", help="State commands")

    show_parser = state_subparsers.add_parser("show", help="Print a session's state")
    show_parser.add_argument("session_id", help="Session identifier")

    prune_parser = state_subparsers.add_parser("prune", help="Remove old state files")
    prune_parser.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Remove state older than N days (default: state.retention_days)",
    )
    prune_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be removed without removing",
    )

    # cost command
    cost_parser = subparsers.add_parser("cost", help="Price a token usage tuple")
    cost_parser.add_argument("--model", required=True, help="Model identifier")
    cost_parser.add_argument("--input", type=int, required=True, help="Input tokens")
    cost_parser.add_argument("--output", type=int, required=True, help="Output tokens")
    cost_parser.add_argument("--cache-write", type=int, default=0, help="Cache write tokens")
    cost_parser.add_argument("--cache-read", type=int, default=0, help="Cache read tokens")

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config commands"
    )
    config_subparsers.add_parser("validate", help="Validate configuration")
    get_parser = config_subparsers.add_parser("get", help="Get configuration value")
    get_parser.add_argument("key", help="Configuration key (e.g. ledger.max_retries)")

    return parser


def cmd_record(args: argparse.Namespace) -> int:
    """Handle 'record' command."""
    from hookledger.hooks.bridge import main as bridge_main

    return bridge_main()


def cmd_config_get(args: argparse.Namespace) -> int:
    """Handle 'config get' command."""
    from hookledger.config import Config

    try:
        config = Config.load_or_default()
        value = config.get_value(args.key)
        print(value)
        return 0
    except KeyError:
        print(f"Error: Config key not found: {args.key}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from hookledger.config import Config

    try:
        config = Config.load()
        print(f"Configuration valid: {config.config_path}")
        print(f"  Version: {config.version}")
        print(f"  Data dir: {config.data_dir}")
        print(f"  State dir: {config.state_dir}")
        print(f"  Retries: {config.ledger.max_retries} x {config.ledger.retry_delay_ms}ms")
        print(f"  Max input: {config.input.max_bytes} bytes")
        print(f"  Log level: {config.logging.level}")
        print(f"  Default model: {config.pricing.default_model}")
        return 0
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 0  # Missing config is not an error
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command == "record":
        sys.exit(cmd_record(args))
    elif args.command == "init":
        from hookledger.metrics.cli import cmd_init

        sys.exit(cmd_init(args))
    elif args.command == "sessions":
        from hookledger.metrics.cli import cmd_sessions

        sys.exit(cmd_sessions(args))
    elif args.command == "state":
        if args.state_command == "show":
            from hookledger.metrics.cli import cmd_state_show

            sys.exit(cmd_state_show(args))
        elif args.state_command == "prune":
            from hookledger.metrics.cli import cmd_state_prune

            sys.exit(cmd_state_prune(args))
        else:
            parser.parse_args(["state", "--help"])
            sys.exit(1)
    elif args.command == "cost":
        from hookledger.metrics.cli import cmd_cost

        sys.exit(cmd_cost(args))
    elif args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        elif args.config_command == "get":
            sys.exit(cmd_config_get(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
