"""Run orchestration: scan, select, execute, merge and persist.

One RunOrchestrator drives one invocation through a fixed sequence of
states:

    INIT -> SCAN -> SELECT -> EXECUTE -> MERGE -> PERSIST -> DONE

Any unrecoverable condition moves it to ERROR, which it never leaves.
Configuration problems and I/O errors while scanning are unrecoverable;
store load and save problems are not, they only cost incrementality.

The stores are written in PERSIST and nowhere else. Aborting a run
earlier leaves them exactly as the previous run wrote them, so the next
run over-approximates what changed and never under-approximates it.

Example:
    >>> from pytest_testedby.config import TestedByConfig
    >>> orchestrator = RunOrchestrator(TestedByConfig(rootdir=Path('/tmp/project')))
    >>> orchestrator.state
    <RunState.INIT: 'init'>
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import time
from typing import TYPE_CHECKING

from pytest_testedby.errors import ConfigurationError
from pytest_testedby.history.scanner import ChangeScanner, SourceUnit
from pytest_testedby.history.store import RunHistoryStore, canonical_path
from pytest_testedby.usage.capture import UsageCapture
from pytest_testedby.usage.collector import UsageReport
from pytest_testedby.usage.graph import UsageGraphStore
from pytest_testedby.usage.selector import ChangeSet, SelectionResult, select


if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from pytest_testedby.config import TestedByConfig
    from pytest_testedby.runners.protocol import TestRunner
    from pytest_testedby.runners.registry import RunnerRegistry


logger = logging.getLogger(__name__)

RUNS_DB = 'runs.db'
TEST_RUNS_DB = 'test_runs.db'
USAGE_DB = 'usage.db'


class RunState(Enum):
    """States of a single orchestrated run."""

    INIT = 'init'
    SCAN = 'scan'
    SELECT = 'select'
    EXECUTE = 'execute'
    MERGE = 'merge'
    PERSIST = 'persist'
    DONE = 'done'
    ERROR = 'error'


@dataclass(frozen=True)
class ScanOutcome:
    """Result of scanning one set of roots.

    Attributes:
        units: Every source unit enumerated, changed or not.
        changed: Paths of the units that are new or modified.
    """

    units: tuple[SourceUnit, ...]
    changed: frozenset[Path]

    @property
    def changed_modules(self) -> frozenset[str]:
        """Return the module names of the changed units."""
        return frozenset(unit.module for unit in self.units if unit.path in self.changed)

    @property
    def modules(self) -> frozenset[str]:
        """Return the module names of all units."""
        return frozenset(unit.module for unit in self.units)


@dataclass(frozen=True)
class RunPlan:
    """What the orchestrator decided to run, before anything ran.

    Attributes:
        changes: The production and test modules that changed.
        selection: The selected test ids.
        tests: The selected test modules as source units, in selection order.
        known_tests: Ids of every test module found by the scan.
    """

    changes: ChangeSet
    selection: SelectionResult
    tests: tuple[SourceUnit, ...]
    known_tests: frozenset[str]

    @property
    def skipped(self) -> frozenset[str]:
        """Return the known tests that were not selected."""
        return self.known_tests - set(self.selection.tests)


@dataclass(frozen=True)
class RunResult:
    """Outcome of an orchestrated run.

    Success is signalled by the state, not by an exit code; callers map
    it to their own exit code convention.

    Attributes:
        state: DONE on success, ERROR otherwise.
        plan: The run plan, if selection was reached.
        report: The usage report, if tests were executed.
        history_saved: Whether both run history stores were written.
        graph_saved: Whether the usage graph was written.
        error: Description of the failure for ERROR results.
    """

    state: RunState
    plan: RunPlan | None = None
    report: UsageReport | None = None
    history_saved: bool = False
    graph_saved: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        """Return True if the run reached DONE."""
        return self.state is RunState.DONE

    @property
    def tests_passed(self) -> bool:
        """Return True if the run reached DONE and no executed test failed."""
        return self.succeeded and (self.report is None or self.report.exit_code == 0)


@dataclass
class _Stores:
    history: RunHistoryStore = field(default_factory=RunHistoryStore)
    test_history: RunHistoryStore = field(default_factory=RunHistoryStore)
    graph: UsageGraphStore = field(default_factory=UsageGraphStore)


class RunOrchestrator:
    """Drives one selective test run from change detection to persistence.

    The orchestrator exclusively owns its stores for the duration of the
    run. Two orchestrators must not target the same cache directory at
    the same time; nothing here locks against that.

    Attributes:
        config: The configuration value object for this run.
        state: Current RunState.
    """

    def __init__(
        self,
        config: TestedByConfig,
        runner: TestRunner | None = None,
        registry: RunnerRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Create an orchestrator.

        Args:
            config: Configuration for this run.
            runner: Runner used by run(). Looked up by config.runner when
                    not given.
            registry: Registry to look the runner up in. Defaults to the
                      built-in registry.
            clock: Returns the current time in seconds since the epoch.
        """
        self.config = config
        self.state = RunState.INIT
        self._runner = runner
        self._registry = registry
        self._clock = clock
        self._stores = _Stores()
        self._started_millis = 0
        self._production: ScanOutcome | None = None
        self._tests: ScanOutcome | None = None
        self._plan: RunPlan | None = None
        self._module_index: dict[str, str] = {}
        self._test_index: dict[str, str] = {}

    @property
    def history(self) -> RunHistoryStore:
        """Return the production run history."""
        return self._stores.history

    @property
    def test_history(self) -> RunHistoryStore:
        """Return the test run history."""
        return self._stores.test_history

    @property
    def graph(self) -> UsageGraphStore:
        """Return the usage graph."""
        return self._stores.graph

    @property
    def plan(self) -> RunPlan | None:
        """Return the run plan once selection has happened."""
        return self._plan

    def _fail(self, message: str) -> None:
        logger.error('Selective test run failed: %s', message)
        self.state = RunState.ERROR

    def _require(self, *states: RunState) -> None:
        if self.state not in states:
            expected = ' or '.join(state.name for state in states)
            msg = f'Orchestrator is in state {self.state.name}, expected {expected}'
            raise RuntimeError(msg)

    # INIT ----------------------------------------------------------------

    def _initialize(self) -> None:
        """Load the stores. Problems degrade to empty stores."""
        cache = self.config.cache_path
        self._started_millis = int(self._clock() * 1000)
        logger.debug('Source roots: %s', ', '.join(map(str, self.config.source_paths)))
        logger.debug('Test roots: %s', ', '.join(map(str, self.config.test_paths)))
        logger.debug('Store directory: %s', cache)

        self._stores = _Stores(
            history=RunHistoryStore.load(cache / RUNS_DB),
            test_history=RunHistoryStore.load(cache / TEST_RUNS_DB),
            graph=UsageGraphStore.load(cache / USAGE_DB),
        )
        self._stores.history.prune_missing()
        self._stores.test_history.prune_missing()

    # SCAN ----------------------------------------------------------------

    def _scan_roots(
        self,
        roots: Sequence[Path],
        includes: Sequence[str],
        excludes: Sequence[str],
        store: RunHistoryStore,
    ) -> ScanOutcome:
        scanner = ChangeScanner(includes, excludes, self.config.stale_millis, store)
        changed = scanner.scan(roots)
        return ScanOutcome(units=tuple(scanner.scanned), changed=frozenset(changed))

    def _scan(self) -> tuple[ScanOutcome, ScanOutcome]:
        """Scan production and test roots as two independent tasks."""
        config = self.config
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='testedby-scan') as pool:
            production = pool.submit(
                self._scan_roots,
                config.source_paths,
                config.includes,
                config.excludes,
                self._stores.history,
            )
            tests = pool.submit(
                self._scan_roots,
                config.test_paths,
                config.test_includes,
                config.test_excludes,
                self._stores.test_history,
            )
            production_outcome = production.result()
            test_outcome = tests.result()

        logger.info(
            'Changed since last run: %d of %d production modules, %d of %d test modules',
            len(production_outcome.changed),
            len(production_outcome.units),
            len(test_outcome.changed),
            len(test_outcome.units),
        )
        return production_outcome, test_outcome

    # SELECT --------------------------------------------------------------

    def _select(self, production: ScanOutcome, tests: ScanOutcome) -> RunPlan:
        known_tests = tests.modules
        pruned = self._stores.graph.prune(known_tests)
        if pruned:
            logger.info('Dropped usage data of %d removed test modules', len(pruned))

        changes = ChangeSet(
            changed_production=production.changed_modules,
            changed_tests=tests.changed_modules,
        )
        selection = select(changes, self._stores.graph, known_tests)

        if not selection.per_test:
            logger.warning('No usage data available, running all %d test modules', len(selection.tests))
        elif selection.conservative:
            logger.warning(
                '%d test modules have no usage data yet and will run: %s',
                len(selection.conservative),
                ', '.join(sorted(selection.conservative)),
            )
        logger.info('Selected %d of %d test modules', len(selection.tests), len(known_tests))

        by_module = {unit.module: unit for unit in tests.units}
        units = tuple(by_module[test_id] for test_id in selection.tests if test_id in by_module)
        return RunPlan(changes=changes, selection=selection, tests=units, known_tests=known_tests)

    def prepare(self) -> RunPlan:
        """Run INIT, SCAN and SELECT.

        Returns:
            The run plan.

        Raises:
            ConfigurationError: For invalid configuration. The state is ERROR.
            OSError: For unrecoverable I/O errors while scanning. The state
                is ERROR.
        """
        self._require(RunState.INIT)
        self._initialize()

        self.state = RunState.SCAN
        try:
            self._production, self._tests = self._scan()
        except (ConfigurationError, OSError) as exc:
            self._fail(str(exc))
            raise
        self._module_index = {canonical_path(unit.path): unit.module for unit in self._production.units}
        self._test_index = {canonical_path(unit.path): unit.module for unit in self._tests.units}

        self.state = RunState.SELECT
        self._plan = self._select(self._production, self._tests)
        self.state = RunState.EXECUTE
        return self._plan

    # EXECUTE -------------------------------------------------------------

    def test_id_for(self, path: Path) -> str | None:
        """Return the test id of a test module path, or None if unknown."""
        return self._test_index.get(canonical_path(path))

    def module_for(self, path: str) -> str | None:
        """Return the production module name of a file path, or None."""
        return self._module_index.get(canonical_path(path))

    def create_capture(self) -> UsageCapture:
        """Create a usage capture plugin bound to this run's scan results."""
        return UsageCapture(
            source_roots=self.config.source_paths,
            test_id_for=self.test_id_for,
            resolve_module=self.module_for,
        )

    def _resolve_runner(self) -> TestRunner:
        if self._runner is not None:
            return self._runner
        if self._registry is None:
            from pytest_testedby.runners import default_registry  # noqa: PLC0415

            self._registry = default_registry
        return self._registry.get(self.config.runner)

    # MERGE / PERSIST -----------------------------------------------------

    def _merge(self, report: UsageReport, plan: RunPlan, production: ScanOutcome, tests: ScanOutcome) -> None:
        """Record scanned files as processed and replace executed tests' edges."""
        production_modules = production.modules
        known_tests = plan.known_tests
        for test_id, modules in sorted(report.usage.items()):
            if test_id not in known_tests:
                logger.debug('Ignoring usage of unknown test %s', test_id)
                continue
            self._stores.graph.replace_edges(test_id, modules & production_modules)

        missed = set(plan.selection.tests) - report.executed_tests
        if missed:
            logger.warning(
                '%d selected test modules did not run; their changes stay pending: %s',
                len(missed),
                ', '.join(sorted(missed)),
            )

        for unit in tests.units:
            if unit.module in missed:
                continue
            self._stores.test_history.set(unit.path, self._started_millis)

        for unit in production.units:
            if missed and unit.path in production.changed:
                continue
            self._stores.history.set(unit.path, self._started_millis)

    def _persist(self) -> tuple[bool, bool]:
        """Save every store independently. Failures are logged, not raised."""
        cache = self.config.cache_path
        history_saved = self._stores.history.save(cache / RUNS_DB)
        test_history_saved = self._stores.test_history.save(cache / TEST_RUNS_DB)
        graph_saved = self._stores.graph.save(cache / USAGE_DB)
        if not (history_saved and test_history_saved and graph_saved):
            logger.warning('Some run data could not be saved; the next run may select more tests than needed')
        return history_saved and test_history_saved, graph_saved

    def complete(self, report: UsageReport) -> RunResult:
        """Run MERGE and PERSIST for the report of an executed plan.

        Args:
            report: Usage report of the executed tests.

        Returns:
            The RunResult, in state DONE.
        """
        self._require(RunState.EXECUTE)
        if self._plan is None or self._production is None or self._tests is None:
            msg = 'Orchestrator reached EXECUTE without a run plan'
            raise RuntimeError(msg)
        self.state = RunState.MERGE
        self._merge(report, self._plan, self._production, self._tests)

        self.state = RunState.PERSIST
        history_saved, graph_saved = self._persist()

        self.state = RunState.DONE
        return RunResult(
            state=RunState.DONE,
            plan=self._plan,
            report=report,
            history_saved=history_saved,
            graph_saved=graph_saved,
        )

    def abort(self, reason: str) -> RunResult:
        """Move to ERROR without persisting anything."""
        self._fail(reason)
        return RunResult(state=RunState.ERROR, plan=self._plan, error=reason)

    def run(self) -> RunResult:
        """Run the whole pipeline with the configured runner.

        Returns:
            The RunResult. Failures are reported through its state and
            error, never raised.
        """
        try:
            runner = self._resolve_runner()
            plan = self.prepare()
        except (ConfigurationError, OSError) as exc:
            if self.state is not RunState.ERROR:
                self._fail(str(exc))
            return RunResult(state=RunState.ERROR, plan=self._plan, error=str(exc))

        if not plan.tests:
            logger.info('Nothing to run')
            return self.complete(UsageReport())

        try:
            report = runner.run(plan.tests, self.create_capture())
        except Exception as exc:  # noqa: BLE001
            return self.abort(f'Runner {runner.name!r} failed: {exc}')

        return self.complete(report)
