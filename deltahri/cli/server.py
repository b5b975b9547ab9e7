"""
CLI entry point for the deltahri-server command.

This module provides the command-line interface for starting the delta robot HRI server.
"""

from deltahri.server.cli import main


def main_entry() -> int:
    """Entry point for the deltahri-server command."""
    return main()


if __name__ == "__main__":
    raise SystemExit(main_entry())
