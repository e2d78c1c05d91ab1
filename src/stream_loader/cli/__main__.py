"""
Unified CLI entry point for stream-loader.

Usage:
    python -m stream_loader.cli <command> [options]

Available commands:
    load    - Stream a CSV file into a table

Examples:
    # Insert a file into a fresh table inside one transaction
    python -m stream_loader.cli load data.csv --table orders --truncate --transaction

    # Upsert on a composite key
    python -m stream_loader.cli load delta.csv --table orders --operation UPSERT --keys id,region
"""

import argparse
import sys
from typing import List, Optional


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point with subcommand routing.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = argparse.ArgumentParser(
        prog="stream_loader.cli",
        description="stream-loader CLI - streaming bulk loads into PostgreSQL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
        required=True,
        help="Command to execute",
    )
    subparsers.add_parser(
        "load",
        help="Stream a CSV file into a table",
        description="Stream a CSV file into a table",
        add_help=False,  # Let the delegated module handle help
    )

    args, remaining_args = parser.parse_known_args(argv)

    if args.command == "load":
        from stream_loader.cli.load import main as load_main

        return load_main(remaining_args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
