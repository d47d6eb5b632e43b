"""UsageCollector for gathering which production modules each test touched.

The collector turns per-test coverage data into the usage report the
orchestrator merges into the usage graph. Coverage is recorded with one
coverage.py context per test module; the collector reads the files with
executed lines in each context and resolves them to module names.

Coverage alone misses module-level code that ran before: a production
module already in sys.modules executes nothing when a second test module
imports it. referenced_modules() closes that gap by following what a test
module's namespace refers to.

Example:
    >>> collector = UsageCollector(lambda path: {'src/shop/cart.py': 'shop.cart'}.get(path))
    >>> collector.record_test_usage('test_cart', ['src/shop/cart.py', 'tests/test_cart.py'])
    >>> collector.usage['test_cart']
    {'shop.cart'}
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
import sys
from types import ModuleType
from typing import TYPE_CHECKING, Any, Protocol


if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable, Iterator, Mapping


class CoverageDataProtocol(Protocol):
    """Protocol for the subset of coverage.py's CoverageData we use."""

    def measured_contexts(self) -> set[str]:
        """Return the set of context names with recorded data."""
        ...

    def measured_files(self) -> Iterable[str]:
        """Return an iterable of file paths that have coverage data."""
        ...

    def set_query_contexts(self, contexts: list[str] | None) -> None:
        """Restrict later lines() queries to contexts matching these regexes."""
        ...

    def lines(self, filename: str) -> Iterable[int] | None:
        """Return the lines covered for a file, or None if not measured."""
        ...


def _is_dunder(name: str) -> bool:
    return name.startswith('__') and name.endswith('__')


def _owners(
    name: str,
    value: object,
    production: Mapping[str, ModuleType],
    by_attribute: Mapping[str, list[str]],
) -> Iterator[str]:
    """Yield the production modules a single namespace entry refers to."""
    if isinstance(value, ModuleType):
        module_name = getattr(value, '__name__', None)
        if module_name in production and production[module_name] is value:
            yield module_name
        return
    if _is_dunder(name) or value is None or isinstance(value, bool):
        return

    owner = getattr(value, '__module__', None)
    if isinstance(owner, str):
        if owner in production:
            yield owner
            return
        if owner != 'builtins':
            source = sys.modules.get(owner)
            if isinstance(source, ModuleType) and vars(source).get(name) is value:
                # imported from a library under its own name
                return

    # plain data such as constants carries no owner; match by identity
    for module_name in by_attribute.get(name, ()):
        if vars(production[module_name]).get(name) is value:
            yield module_name


def referenced_modules(namespace: Mapping[str, object], production: Mapping[str, ModuleType]) -> set[str]:
    """Return the production modules a namespace refers to.

    An entry refers to a production module when it is that module, when
    its __module__ names it, or when it is the very object bound to the
    same name in it (`from shop.config import CURRENCY`). Referenced
    production modules are followed in turn, so module-level state a
    module took from another at import time is included too.

    The result over-approximates real usage, which only costs extra test
    runs.

    Args:
        namespace: A test module's globals.
        production: Loaded production modules keyed by module name.

    Returns:
        Names of the referenced production modules.

    Example:
        >>> config = ModuleType('shop.config')
        >>> config.CURRENCY = 'EUR-' + 'cents'
        >>> referenced_modules({'CURRENCY': config.CURRENCY}, {'shop.config': config})
        {'shop.config'}
    """
    by_attribute: dict[str, list[str]] = {}
    for module_name, module in production.items():
        for attribute in list(vars(module)):
            if not _is_dunder(attribute):
                by_attribute.setdefault(attribute, []).append(module_name)

    reached: set[str] = set()
    pending: list[Mapping[str, object]] = [namespace]
    while pending:
        current = pending.pop()
        for name, value in list(current.items()):
            for module_name in _owners(name, value, production, by_attribute):
                if module_name not in reached:
                    reached.add(module_name)
                    pending.append(vars(production[module_name]))
    return reached


@dataclass(frozen=True)
class UsageReport:
    """What a test run hands back to the orchestrator.

    Attributes:
        exit_code: The runner's exit status (0 means every test passed).
        usage: For every executed test id, the production modules it
               touched. Tests absent from the mapping were not executed.
    """

    exit_code: int = 0
    usage: dict[str, frozenset[str]] = field(default_factory=dict)

    @property
    def executed_tests(self) -> set[str]:
        """Return the ids of the tests that ran."""
        return set(self.usage)


class UsageCollector:
    """Accumulates the production modules touched by each test module.

    Attributes:
        usage: Mapping of test id to the module names it touched.
    """

    def __init__(self, resolve_module: Callable[[str], str | None]) -> None:
        """Create a collector.

        Args:
            resolve_module: Maps a measured file path to its production
                            module name, or None for files that are not
                            production code (tests, site-packages).
        """
        self._resolve_module = resolve_module
        self.usage: dict[str, set[str]] = {}
        self._total_files = 0

    def record_test_usage(self, test_id: str, files: Iterable[str]) -> None:
        """Record the files executed by one test module.

        Repeated calls for the same test accumulate: a test module's usage
        is collected from its import and from each of its test items.

        Args:
            test_id: The test module id.
            files: Paths of files with executed lines.
        """
        modules = self.usage.setdefault(test_id, set())
        for file_path in files:
            self._total_files += 1
            module = self._resolve_module(file_path)
            if module is not None:
                modules.add(module)

    def record_namespace_usage(
        self,
        test_id: str,
        namespace: Mapping[str, object],
        production: Mapping[str, ModuleType],
    ) -> None:
        """Record the production modules a test module's globals refer to.

        Args:
            test_id: The test module id.
            namespace: The collected test module's globals.
            production: Loaded production modules keyed by module name.
        """
        referenced = referenced_modules(namespace, production)
        self.record_test_usage(test_id, [production[name].__file__ for name in sorted(referenced)])

    def collect_from_coverage_data(
        self,
        coverage_data: CoverageDataProtocol,
        test_ids: Collection[str],
    ) -> None:
        """Record usage for every test context in coverage.py data.

        Contexts that are not test ids, such as the empty context used
        between tests, are ignored.

        Args:
            coverage_data: A coverage.py CoverageData object.
            test_ids: Ids of the tests whose contexts should be read.
        """
        try:
            for context in sorted(coverage_data.measured_contexts()):
                if context not in test_ids:
                    continue
                coverage_data.set_query_contexts([f'^{re.escape(context)}$'])
                files = [path for path in coverage_data.measured_files() if coverage_data.lines(path)]
                self.record_test_usage(context, files)
        finally:
            coverage_data.set_query_contexts(None)

    def report(self, exit_code: int = 0) -> UsageReport:
        """Build the UsageReport for the collected data.

        Args:
            exit_code: The test run's exit status.

        Returns:
            Immutable report of the usage collected so far.
        """
        return UsageReport(
            exit_code=exit_code,
            usage={test_id: frozenset(modules) for test_id, modules in self.usage.items()},
        )

    def get_stats(self) -> dict[str, Any]:
        """Get statistics about collected usage data.

        Returns:
            Dict with keys:
                - total_tests: Number of tests recorded
                - total_modules: Number of distinct production modules touched
                - total_files: Number of measured files seen
        """
        modules: set[str] = set()
        for touched in self.usage.values():
            modules |= touched
        return {
            'total_tests': len(self.usage),
            'total_modules': len(modules),
            'total_files': self._total_files,
        }
