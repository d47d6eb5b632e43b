"""Command-line interface for selective test runs outside a pytest invocation.

Usage:
    testedby select               # show what would run
    testedby run                  # run it and record usage
    testedby run --stale-millis 2000 --runner pytest
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from pytest_testedby import __version__
from pytest_testedby.config import load_config, merge_configs
from pytest_testedby.errors import ConfigurationError
from pytest_testedby.orchestrator import RunOrchestrator
from pytest_testedby.reporting.console import ConsoleReporter


EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the testedby command."""
    parser = argparse.ArgumentParser(
        prog='testedby',
        description='Run only the test modules affected by changes since the last run.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        'command',
        choices=('select', 'run'),
        help="'select' prints the selection, 'run' also executes it and records usage",
    )
    parser.add_argument(
        '--rootdir',
        type=Path,
        default=Path.cwd(),
        help='Project directory holding pyproject.toml (default: current directory)',
    )
    parser.add_argument('--source-roots', default=None, help='Comma-separated production source roots')
    parser.add_argument('--test-roots', default=None, help='Comma-separated test roots')
    parser.add_argument('--cache-dir', default=None, help='Directory for run history and usage data')
    parser.add_argument(
        '--stale-millis',
        type=int,
        default=None,
        help='Ignore modification times within this many milliseconds of the last run',
    )
    parser.add_argument('--runner', default=None, help='Name of the test runner (default: pytest)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log roots, stores and per-file decisions')
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the testedby command.

    Args:
        argv: Command-line arguments, without the program name.

    Returns:
        0 on success, 1 if selected tests failed, 2 on configuration or
        runner errors.
    """
    args = build_parser().parse_args(argv)

    try:
        config = merge_configs(
            load_config(args.rootdir.resolve()),
            cli_source_roots=args.source_roots,
            cli_test_roots=args.test_roots,
            cli_cache_dir=args.cache_dir,
            cli_stale_millis=args.stale_millis,
            cli_runner=args.runner,
            cli_verbose=args.verbose,
        )
    except ConfigurationError as e:
        print(f'Error: {e}', file=sys.stderr)
        return EXIT_ERROR

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    reporter = ConsoleReporter()
    orchestrator = RunOrchestrator(config)

    if args.command == 'select':
        try:
            plan = orchestrator.prepare()
        except (ConfigurationError, OSError) as e:
            print(f'Error: {e}', file=sys.stderr)
            return EXIT_ERROR
        reporter.write_plan(plan)
        return EXIT_OK

    result = orchestrator.run()
    reporter.write_result(result)
    if not result.succeeded:
        return EXIT_ERROR
    return EXIT_OK if result.tests_passed else EXIT_TESTS_FAILED


if __name__ == '__main__':
    sys.exit(main())
