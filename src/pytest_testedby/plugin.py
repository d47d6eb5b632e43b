"""pytest plugin for selective test execution.

This module provides the pytest plugin hooks that run only the test
modules affected by changes since the last run, and record fresh usage
data for the ones that ran.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import TYPE_CHECKING

import pytest

from pytest_testedby.config import load_config, merge_configs
from pytest_testedby.errors import ConfigurationError
from pytest_testedby.orchestrator import RunOrchestrator, RunState
from pytest_testedby.reporting.console import ConsoleReporter


if TYPE_CHECKING:
    from pytest_testedby.config import TestedByConfig
    from pytest_testedby.orchestrator import RunResult
    from pytest_testedby.usage.capture import UsageCapture

_ABORTING_EXIT_CODES = frozenset(
    {pytest.ExitCode.INTERRUPTED, pytest.ExitCode.INTERNAL_ERROR, pytest.ExitCode.USAGE_ERROR},
)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add command-line options for pytest-testedby."""
    group = parser.getgroup('testedby', 'selective test execution with testedby')
    group.addoption(
        '--testedby',
        action='store_true',
        default=False,
        dest='testedby',
        help='Run only the test modules affected by changes since the last run',
    )
    group.addoption(
        '--testedby-source-roots',
        action='store',
        default=None,
        dest='testedby_source_roots',
        help='Comma-separated production source roots (default: src)',
    )
    group.addoption(
        '--testedby-test-roots',
        action='store',
        default=None,
        dest='testedby_test_roots',
        help='Comma-separated test roots (default: tests)',
    )
    group.addoption(
        '--testedby-cache-dir',
        action='store',
        default=None,
        dest='testedby_cache_dir',
        help='Directory for run history and usage data (default: .testedby_cache)',
    )
    group.addoption(
        '--testedby-stale-millis',
        action='store',
        type=int,
        default=None,
        dest='testedby_stale_millis',
        help='Ignore modification times within this many milliseconds of the last run (default: 0)',
    )
    group.addoption(
        '--testedby-verbose',
        action='store_true',
        default=False,
        dest='testedby_verbose',
        help='Log roots, stores and per-file decisions',
    )


def build_config(config: pytest.Config) -> TestedByConfig:
    """Build the TestedByConfig from pyproject.toml and command-line options.

    Args:
        config: The pytest config.

    Returns:
        The merged configuration.

    Raises:
        pytest.UsageError: If the configuration is invalid.
    """
    try:
        return merge_configs(
            load_config(config.rootpath),
            cli_source_roots=config.option.testedby_source_roots,
            cli_test_roots=config.option.testedby_test_roots,
            cli_cache_dir=config.option.testedby_cache_dir,
            cli_stale_millis=config.option.testedby_stale_millis,
            cli_verbose=config.option.testedby_verbose,
        )
    except ConfigurationError as exc:
        raise pytest.UsageError(f'pytest-testedby: {exc}') from exc


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest-testedby based on command-line options."""
    if not config.option.testedby:
        return
    if hasattr(config, 'workerinput'):
        # xdist workers run what the controller selected
        return
    testedby_config = build_config(config)
    if testedby_config.verbose:
        logging.getLogger('pytest_testedby').setLevel(logging.DEBUG)
    config.pluginmanager.register(TestedBySession(testedby_config), 'testedby-session')


class TestedBySession:
    """Per-session plugin object that selects, captures and records.

    Attributes:
        orchestrator: The RunOrchestrator driving this session.
        capture: The usage capture registered for this session.
        result: The RunResult once the session finished.
    """

    __test__ = False

    def __init__(self, config: TestedByConfig) -> None:
        self.orchestrator = RunOrchestrator(config)
        self.capture: UsageCapture | None = None
        self.result: RunResult | None = None
        self._deselected = 0

    @pytest.hookimpl(tryfirst=True)
    def pytest_sessionstart(self, session: pytest.Session) -> None:
        """Detect changes and select tests before collection starts."""
        try:
            self.orchestrator.prepare()
        except (ConfigurationError, OSError) as exc:
            raise pytest.UsageError(f'pytest-testedby: {exc}') from exc
        self.capture = self.orchestrator.create_capture()
        session.config.pluginmanager.register(self.capture, 'testedby-capture')
        self.capture.start()

    @pytest.hookimpl(trylast=True)
    def pytest_collection_modifyitems(self, config: pytest.Config, items: list[pytest.Item]) -> None:
        """Deselect items of test modules that were not selected.

        Items outside the known test modules (doctests, files outside the
        test roots) are always kept.
        """
        plan = self.orchestrator.plan
        if plan is None:
            return
        selected = set(plan.selection.tests)
        kept: list[pytest.Item] = []
        deselected: list[pytest.Item] = []
        for item in items:
            test_id = self.orchestrator.test_id_for(item.path)
            if test_id is None or test_id in selected:
                kept.append(item)
            else:
                deselected.append(item)
        if deselected:
            config.hook.pytest_deselected(items=deselected)
            items[:] = kept
        self._deselected = len(deselected)

    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        """Record usage and run history unless the session was aborted."""
        if exitstatus == pytest.ExitCode.NO_TESTS_COLLECTED and self._deselected:
            # every collected item belonged to an unaffected module
            session.exitstatus = exitstatus = pytest.ExitCode.OK
        if self.capture is None or self.orchestrator.state is not RunState.EXECUTE:
            return
        self.capture.stop()
        if exitstatus in _ABORTING_EXIT_CODES:
            self.result = self.orchestrator.abort(f'session ended with {pytest.ExitCode(exitstatus).name}')
            return
        report = replace(self.capture.report(), exit_code=int(exitstatus))
        self.result = self.orchestrator.complete(report)

    def pytest_terminal_summary(self, terminalreporter: pytest.TerminalReporter) -> None:
        """Write the selection summary."""
        plan = self.orchestrator.plan
        if plan is None:
            return
        reporter = ConsoleReporter()
        terminalreporter.write_sep('-', 'testedby')
        for line in reporter.summary_lines(plan):
            terminalreporter.write_line(line)
        if self._deselected:
            terminalreporter.write_line(f'Deselected {self._deselected} items of unaffected test modules.')
        if self.result is not None:
            for line in reporter.outcome_lines(self.result):
                terminalreporter.write_line(line)
