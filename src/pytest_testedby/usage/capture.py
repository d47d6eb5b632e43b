"""Usage capture during a pytest session with coverage.py.

UsageCapture is a plugin object registered with pytest. It measures the
source roots for the whole session and switches the coverage context to
the id of the test module being collected or run, so every executed line
is attributed to the test module that caused it. Collection is included
because module-level code runs when a test module imports it.
"""

from __future__ import annotations

from collections import Counter
import logging
import sys
from typing import TYPE_CHECKING

import coverage
import pytest

from pytest_testedby.usage.collector import UsageCollector, UsageReport


if TYPE_CHECKING:
    from collections.abc import Callable, Generator, Sequence
    from pathlib import Path
    from types import ModuleType


logger = logging.getLogger(__name__)

_IDLE_CONTEXT = ''


class UsageCapture:
    """pytest plugin object that records production modules touched per test module.

    Attributes:
        collector: The UsageCollector filled when the session finishes.
        executed_tests: Ids of the test modules that ran completely.
    """

    def __init__(
        self,
        source_roots: Sequence[Path],
        test_id_for: Callable[[Path], str | None],
        resolve_module: Callable[[str], str | None],
    ) -> None:
        """Create a capture plugin.

        Args:
            source_roots: Production source roots to measure.
            test_id_for: Maps a test file path to its test id, or None for
                         files that are not known test modules.
            resolve_module: Maps a measured file path to its production
                            module name, or None.
        """
        self._source_roots = [str(root) for root in source_roots if root.is_dir()]
        self._test_id_for = test_id_for
        self.collector = UsageCollector(resolve_module)
        self._expected: Counter[str] = Counter()
        self._finished: Counter[str] = Counter()
        self._coverage: coverage.Coverage | None = None
        self._exit_code = 0
        self._resolve_module = resolve_module
        self._production: dict[str, ModuleType] = {}
        self._classified: set[str] = set()

    @property
    def executed_tests(self) -> set[str]:
        """Return the test modules whose every collected item ran to completion.

        A module that ran only partly, because of -k, -x or an interrupt,
        is left out: its usage would be incomplete.
        """
        return {
            test_id
            for test_id, finished in self._finished.items()
            if finished >= self._expected.get(test_id, 0)
        }

    def start(self) -> None:
        """Start measuring. Does nothing when there is nothing to measure."""
        if self._coverage is not None or not self._source_roots:
            return
        cov = coverage.Coverage(data_file=None, source=self._source_roots, config_file=False)
        cov.set_option('run:disable_warnings', ['no-data-collected', 'module-not-imported', 'module-not-measured'])
        cov.start()
        self._coverage = cov
        logger.debug('Measuring usage in %s', ', '.join(self._source_roots))

    def stop(self) -> None:
        """Stop measuring and read the recorded contexts into the collector."""
        cov = self._coverage
        if cov is None:
            return
        self._coverage = None
        cov.stop()
        self.collector.collect_from_coverage_data(cov.get_data(), self.executed_tests)

    def report(self) -> UsageReport:
        """Return the usage captured for the executed tests."""
        usage = {test_id: frozenset(self.collector.usage.get(test_id, ())) for test_id in self.executed_tests}
        return UsageReport(exit_code=self._exit_code, usage=usage)

    def _switch(self, context: str) -> None:
        if self._coverage is not None:
            self._coverage.switch_context(context)

    def production_modules(self) -> dict[str, ModuleType]:
        """Return the loaded modules whose files are production modules.

        Only modules imported since the last call are classified.
        """
        for name, module in list(sys.modules.items()):
            if name in self._classified:
                continue
            self._classified.add(name)
            file_path = getattr(module, '__file__', None)
            if isinstance(file_path, str) and self._resolve_module(file_path) == name:
                self._production[name] = module
        return self._production

    @pytest.hookimpl(tryfirst=True)
    def pytest_sessionstart(self, session: pytest.Session) -> None:  # noqa: ARG002
        """Start coverage before any test module is imported."""
        self.start()

    @pytest.hookimpl(wrapper=True)
    def pytest_make_collect_report(
        self,
        collector: pytest.Collector,
    ) -> Generator[None, pytest.CollectReport, pytest.CollectReport]:
        """Attribute import-time execution to the test module being collected.

        Production modules imported earlier by another test module run no
        code now, so the collected module's globals are followed as well.
        """
        test_id = self._test_id_for(collector.path) if isinstance(collector, pytest.Module) else None
        if test_id is None:
            return (yield)
        self._switch(test_id)
        try:
            report = yield
        finally:
            self._switch(_IDLE_CONTEXT)
        if report.passed:
            self.collector.record_namespace_usage(test_id, vars(collector.obj), self.production_modules())
        return report

    @pytest.hookimpl(tryfirst=True)
    def pytest_collection_modifyitems(self, items: list[pytest.Item]) -> None:
        """Count the items of every test module before any are deselected."""
        for item in items:
            test_id = self._test_id_for(item.path)
            if test_id is not None:
                self._expected[test_id] += 1

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_protocol(self, item: pytest.Item) -> Generator[None, object, object]:
        """Attribute setup, call and teardown of an item to its test module."""
        test_id = self._test_id_for(item.path)
        if test_id is None:
            return (yield)
        self._switch(test_id)
        try:
            result = yield
        finally:
            self._switch(_IDLE_CONTEXT)
        self._finished[test_id] += 1
        return result

    @pytest.hookimpl(trylast=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:  # noqa: ARG002
        """Stop coverage and collect per-test usage."""
        self._exit_code = int(exitstatus)
        self.stop()
