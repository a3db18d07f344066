"""
Command-line entry point for the unreferenced state group finder.

Usage:
    find-unreferenced-state-groups -p postgresql://synapse@db/synapse \\
        -r '!room:example.org' -o unreferenced.txt

The list of ids goes to the output file, or to standard output when no
file is given. Progress and summary lines go to the log on standard error,
so standard output stays a clean id list.

Exit codes:
    0    success
    2    configuration or schema error
    3    store connection error
    4    store query error
    5    fatal data anomaly
    6    output error
    130  interrupted

Invariants:
    - The connection string is only ever logged with its password masked
    - SIGINT/SIGTERM cancel the run; nothing is written after cancellation
    - The id list is written before the run report

How to change safely:
    - Never reuse an exit code; operators script against them
    - Every flag that maps to a setting goes through with_overrides() so it
      is validated exactly like the environment
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

import json_log_formatter

from ._version import __version__
from .config import FinderSettings
from .errors import ConfigurationError, FinderError
from .finder import FinderResult, find_unreferenced
from .graph import Diagnostics
from .output import FORMATS, write_ids, write_text_atomic
from .store import create_store
from .store.postgres import redact_dsn

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setup_logging(settings: FinderSettings) -> None:
    """Configure logging based on settings.

    Args:
        settings: Finder settings
    """
    level = getattr(logging, settings.log_level, logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="find-unreferenced-state-groups",
        description=(
            "Find state groups in a Synapse database that no event references, "
            "directly or through their delta chain. Read-only."
        ),
    )
    parser.add_argument(
        "-p",
        "--postgres-url",
        required=True,
        metavar="URL",
        help="PostgreSQL connection string of the Synapse database",
    )
    parser.add_argument("-r", "--room-id", metavar="ROOM_ID", help="Only process this room")
    parser.add_argument(
        "-o", "--output", metavar="FILE", help="Write ids to FILE instead of standard output"
    )
    parser.add_argument(
        "--format", choices=FORMATS, default="lines", help="Output format (default: lines)"
    )
    parser.add_argument("--report", metavar="FILE", help="Write a JSON run report to FILE")
    parser.add_argument("--strict", action="store_true", help="Abort on any data anomaly")
    parser.add_argument("--page-size", type=int, metavar="N", help="Rows fetched per round trip")
    parser.add_argument(
        "--no-resolve-missing",
        action="store_true",
        help="Do not look up groups referenced from the room but stored outside it",
    )
    parser.add_argument(
        "--sequential-scans",
        action="store_true",
        help="Run the scans one after another on a single connection",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def resolve_settings(args: argparse.Namespace, base: FinderSettings | None = None) -> FinderSettings:
    """Apply command-line flags on top of environment settings.

    Raises:
        ConfigurationError: If a value is invalid
    """
    if args.room_id is not None and not args.room_id.strip():
        raise ConfigurationError("Room id must not be empty", setting="room_id")

    settings = base or FinderSettings.load()
    settings = settings.with_overrides(
        page_size=args.page_size,
        resolve_missing=False if args.no_resolve_missing else None,
        parallel_scans=False if args.sequential_scans else None,
        log_level="DEBUG" if args.verbose else None,
    )
    if args.strict:
        settings = settings.with_strict_policy()
    return settings


async def run(
    args: argparse.Namespace,
    settings: FinderSettings,
    diagnostics: Diagnostics,
) -> FinderResult:
    """Run the finder and write its output.

    Raises:
        FinderError: On any failure; see the exit code table
    """
    logger.info(f"Connecting to {redact_dsn(args.postgres_url)}")
    store = create_store(args.postgres_url, settings)
    result = await find_unreferenced(store, settings, args.room_id, diagnostics)
    write_ids(result.unreferenced, args.output, args.format)
    return result


def write_report(path: str, report: dict[str, Any]) -> None:
    write_text_atomic(path, json.dumps(report, indent=2, sort_keys=True) + "\n")


def run_cli(argv: list[str] | None = None) -> int:
    """Parse arguments, run the finder and return the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = resolve_settings(args)
        redact_dsn(args.postgres_url)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return e.exit_code

    setup_logging(settings)
    settings.log_config()
    diagnostics = Diagnostics(settings.anomaly_policy(), log_limit=settings.anomaly_log_limit)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    task = loop.create_task(run(args, settings, diagnostics))

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, cancelling")
        task.cancel()

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_signal, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not the main thread, or no signal support on this platform
            pass

    report: dict[str, Any] = {"room_id": args.room_id, "version": __version__}
    exit_code = EXIT_OK
    try:
        result = loop.run_until_complete(task)
        report.update(result.to_dict())
    except asyncio.CancelledError:
        logger.warning("Interrupted, nothing was written")
        exit_code = EXIT_INTERRUPTED
    except KeyboardInterrupt:
        task.cancel()
        loop.run_until_complete(asyncio.gather(task, return_exceptions=True))
        logger.warning("Interrupted, nothing was written")
        exit_code = EXIT_INTERRUPTED
    except FinderError as e:
        logger.error(f"{type(e).__name__}: {e.message}", extra={"code": e.code, "details": e.details})
        report["error"] = {"type": type(e).__name__, "code": e.code, "message": e.message}
        exit_code = e.exit_code
    except Exception:
        logger.exception("Unexpected failure")
        exit_code = EXIT_FAILURE
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        loop.close()
        asyncio.set_event_loop(None)

    if args.report and exit_code != EXIT_INTERRUPTED:
        report.setdefault("anomalies", diagnostics.summary())
        report["exit_code"] = exit_code
        try:
            write_report(args.report, report)
        except FinderError as e:
            logger.error(f"Failed to write run report: {e.message}")
            if exit_code == EXIT_OK:
                exit_code = e.exit_code

    return exit_code


def main() -> None:
    """Main entry point."""
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
