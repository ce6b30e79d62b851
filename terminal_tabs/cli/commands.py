"""Command implementations for the tt CLI."""

import sys

from .client import TerminalTabsClient


def format_terminal_line(terminal: dict, show_working_dir: bool = False) -> str:
    """Format a terminal for one-line display."""
    line = f"{terminal['name']} ({terminal['id']}) | {terminal['status']} | {terminal['kind']}"
    if show_working_dir and terminal.get("workingDir"):
        line += f" | {terminal['workingDir']}"
    if terminal.get("errorMessage"):
        line += f" | {terminal['errorMessage']}"
    return line


def cmd_list(client: TerminalTabsClient) -> int:
    """
    List all terminals.

    Exit codes:
        0: Success
        2: Backend unavailable
    """
    terminals = client.list_terminals()
    if terminals is None:
        print("Error: Terminal Tabs backend unavailable", file=sys.stderr)
        return 2

    if not terminals:
        print("No terminals")
        return 0

    for terminal in terminals:
        print(format_terminal_line(terminal))
    return 0


def cmd_status(client: TerminalTabsClient, terminal_id: str) -> int:
    """
    Show details for one terminal.

    Exit codes:
        0: Success
        1: Terminal not found
        2: Backend unavailable
    """
    terminal, unavailable = client.get_terminal(terminal_id)
    if unavailable:
        print("Error: Terminal Tabs backend unavailable", file=sys.stderr)
        return 2
    if terminal is None:
        print(f"Error: Terminal {terminal_id} not found", file=sys.stderr)
        return 1

    print(format_terminal_line(terminal, show_working_dir=True))
    if terminal.get("sessionName"):
        print(f"  tmux session: {terminal['sessionName']}")
    print(f"  size: {terminal['cols']}x{terminal['rows']}")
    print(f"  owners: {terminal.get('owners', 0)}")
    print(f"  last activity: {terminal['lastActivity']}")
    return 0


def cmd_orphans(client: TerminalTabsClient) -> int:
    """List tmux sessions left over from a previous backend run."""
    orphans = client.list_orphans()
    if orphans is None:
        print("Error: Terminal Tabs backend unavailable", file=sys.stderr)
        return 2

    if not orphans:
        print("No orphaned tmux sessions")
        return 0

    for name in orphans:
        print(name)
    return 0


def cmd_health(client: TerminalTabsClient) -> int:
    health = client.health()
    if health is None:
        print("Terminal Tabs backend: unavailable")
        return 2

    print(
        f"Terminal Tabs backend: {health.get('status')} "
        f"({health.get('active_terminals', 0)} terminals, {health.get('connections', 0)} connections)"
    )
    return 0
