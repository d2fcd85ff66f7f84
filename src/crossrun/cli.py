"""
Command-line interface for crossrun.

Examples:
  crossrun --browser inprocess
  crossrun --config crossrun.json --browser chrome --browser firefox --headless --http-server http://localhost:8080
  crossrun --remote sauce --http-server https://ci.example.com/tests
  crossrun --suite tests/math_suite.py --browser inprocess --watch
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv

from crossrun import __version__
from crossrun.config import RunnerConfig, RunOptions, find_default_config, load_config
from crossrun.errors import HarnessError
from crossrun.orchestrator import Orchestrator

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

logger = structlog.get_logger(__name__)


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure structlog for CLI output."""
    log_level = "DEBUG" if debug else "INFO" if verbose else "WARNING"

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="crossrun",
        description="crossrun - run test suites across browsers and in-process targets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )

    parser.add_argument(
        "--config", "-c",
        help="Runner config file (default: crossrun.json in the current directory)",
    )
    parser.add_argument(
        "--suite", "-s",
        help="Run a single test file instead of the configured test files",
    )
    parser.add_argument(
        "--browser", "-b",
        action="append",
        dest="browsers",
        help="Target to run on, repeatable (chrome, firefox, edge, safari, inprocess; default: chrome)",
    )
    parser.add_argument(
        "--remote", "-r",
        nargs="?",
        const="default",
        help="Run on the targets of a named remote config (default name: default)",
    )
    parser.add_argument(
        "--http-server",
        help="Base URL of the server hosting the harness page",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run local browsers headless",
    )
    parser.add_argument(
        "--coverage",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Aggregate coverage and enforce thresholds (default: on unless --debug)",
    )
    parser.add_argument(
        "--watch", "-w",
        action="store_true",
        help="Re-run the tests whenever files change",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Open the harness in the default browser and wait instead of running automatically",
    )
    parser.add_argument(
        "--root",
        default=".",
        help="Root directory that resource paths are relative to (default: .)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output, including all target logs",
    )
    parser.add_argument(
        "--log-debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def build_options(args: argparse.Namespace) -> RunOptions:
    config_file = args.config
    if not config_file:
        found = find_default_config(args.root)
        config_file = found.name if found else None
    if not config_file and not args.suite:
        raise HarnessError("Unable to find a crossrun.json config file; pass --config or --suite")

    return RunOptions(
        browsers=args.browsers or ["chrome"],
        config_file=config_file,
        test_file=args.suite,
        remote=args.remote,
        http_server=args.http_server,
        headless=args.headless,
        verbose=args.verbose,
        watch=args.watch,
        coverage=not args.debug if args.coverage is None else args.coverage,
        debug=args.debug,
        root_dir=args.root,
    )


def load_runner_config(options: RunOptions) -> RunnerConfig:
    if not options.config_file:
        return RunnerConfig()
    return load_config(Path(options.root_dir) / options.config_file)


async def run_tests(orchestrator: Orchestrator) -> bool:
    """Run with SIGINT wired to the orchestrator's cancellation signal."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await orchestrator.run()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    load_dotenv()
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_debug)

    try:
        options = build_options(args)
        config = load_runner_config(options)
    except (HarnessError, ValueError, OSError) as e:
        logger.error("configuration_error", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    orchestrator = Orchestrator(options, config)
    try:
        success = asyncio.run(run_tests(orchestrator))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except HarnessError as e:
        logger.error("run_failed", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if orchestrator.cancelled.is_set() and not options.debug and not options.watch:
        return EXIT_INTERRUPTED
    return EXIT_SUCCESS if success else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
