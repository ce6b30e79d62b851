"""Main entry point for tt CLI tool."""

import argparse
import sys

from .client import TerminalTabsClient
from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tt",
        description="Terminal Tabs CLI - inspect shared terminals",
    )
    parser.add_argument("--api-url", help="Backend URL (default: $TT_API_URL or http://127.0.0.1:8129)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # tt list
    subparsers.add_parser("list", help="List terminals")

    # tt status <terminal-id>
    status_parser = subparsers.add_parser("status", help="Show one terminal")
    status_parser.add_argument("terminal_id", help="Terminal ID")

    # tt orphans
    subparsers.add_parser("orphans", help="List tmux sessions no terminal is registered for")

    # tt health
    subparsers.add_parser("health", help="Check backend health")

    return parser


def main(argv=None):
    """Main entry point for tt CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    client = TerminalTabsClient(api_url=args.api_url)

    # Dispatch to command handler
    if args.command == "list":
        sys.exit(commands.cmd_list(client))
    elif args.command == "status":
        sys.exit(commands.cmd_status(client, args.terminal_id))
    elif args.command == "orphans":
        sys.exit(commands.cmd_orphans(client))
    elif args.command == "health":
        sys.exit(commands.cmd_health(client))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
