"""
``load`` command: stream a CSV file through ``StreamLoader``.

The first line of the file is a header. ``--columns`` selects and orders the
loaded columns (default: every header column). Empty fields are submitted as
NULL unless ``--keep-empty`` is given.
"""

import argparse
import csv
import json
import sys
from typing import Dict, List, Optional

from stream_loader.io.loader import (
    LoaderConfigError,
    OnError,
    Operation,
    StreamLoader,
    StreamLoaderError,
    load_loader_config,
)
from stream_loader.io.loader.config import build_config
from stream_loader.io.stage import LocalDirectoryStage
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)


def _split(value: Optional[str]) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream_loader.cli load",
        description="Stream a CSV file into a PostgreSQL table",
    )
    parser.add_argument("csv_file", help="CSV file with a header line")
    parser.add_argument("--config", help="YAML loader configuration; flags override it")
    parser.add_argument("--table", help="Target table")
    parser.add_argument("--schema", dest="schema_name", help="Target schema")
    parser.add_argument(
        "--operation",
        choices=[op.value for op in Operation],
        help="Load statement (default: INSERT)",
    )
    parser.add_argument("--columns", help="Comma separated columns to load")
    parser.add_argument("--keys", help="Comma separated match keys")
    parser.add_argument(
        "--on-error", choices=[mode.value for mode in OnError], help="Row error policy"
    )
    parser.add_argument("--throw-on-error", action="store_true", default=None)
    parser.add_argument("--transaction", dest="start_transaction", action="store_true",
                        default=None, help="Load everything in one transaction")
    parser.add_argument("--truncate", dest="truncate_table", action="store_true",
                        default=None, help="Truncate the table first (INSERT only)")
    parser.add_argument("--row-bound", dest="csv_row_count_bound", type=int,
                        help="Rows per staged file")
    parser.add_argument("--preserve-stage", dest="preserve_staged_file",
                        action="store_true", default=None)
    parser.add_argument("--compress", dest="compress_staged_file",
                        action="store_true", default=None)
    parser.add_argument("--stage-dir", help="Local staging directory")
    parser.add_argument("--keep-empty", action="store_true",
                        help="Submit empty fields as empty strings instead of NULL")
    parser.add_argument("--encoding", default="utf-8")
    return parser


def _options(args: argparse.Namespace, header: List[str]) -> Dict[str, object]:
    options: Dict[str, object] = {
        name: getattr(args, name)
        for name in (
            "table",
            "schema_name",
            "operation",
            "on_error",
            "throw_on_error",
            "start_transaction",
            "truncate_table",
            "csv_row_count_bound",
            "preserve_staged_file",
            "compress_staged_file",
        )
        if getattr(args, name) is not None
    }
    if args.columns:
        options["columns"] = _split(args.columns)
    if args.keys:
        options["keys"] = _split(args.keys)
    if args.config is None:
        options.setdefault("columns", header)
    return options


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        with open(args.csv_file, "r", encoding=args.encoding, newline="") as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if not header:
                print(f"{args.csv_file} is empty", file=sys.stderr)
                return 2

            options = _options(args, header)
            if args.config:
                config = load_loader_config(args.config, **options)
            else:
                config = build_config(**options)

            missing = [c for c in config.columns if c not in header]
            if missing:
                print(f"Columns {missing} not found in {args.csv_file}", file=sys.stderr)
                return 2
            positions = [header.index(c) for c in config.columns]

            stage = LocalDirectoryStage(args.stage_dir) if args.stage_dir else None
            loader = StreamLoader(config, stage=stage)
            loader.start()
            try:
                for line in reader:
                    loader.submit_row(
                        line[p] if (args.keep_empty or line[p] != "") else None
                        for p in positions
                    )
            except StreamLoaderError:
                # Fatal error latched by a batch; finish() rolls back and re-raises
                pass
            snapshot = loader.finish()
    except LoaderConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except StreamLoaderError as e:
        logger.error("cli.load.failed", error_type=type(e).__name__, error=str(e))
        print(f"Load failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps(snapshot.as_dict(), indent=2))
    return 0 if snapshot.error_count == 0 else 3


if __name__ == "__main__":
    sys.exit(main())
