"""TestSelector for choosing which test modules to run after a change.

The selector combines the modules that changed since the last run with
the usage graph recorded during earlier runs. Tests whose recorded usage
includes a changed module are selected; tests that changed themselves are
always selected; tests the graph knows nothing about are selected too,
because missing evidence is not evidence of independence.

Example:
    >>> from pytest_testedby.usage.graph import UsageGraphStore
    >>> graph = UsageGraphStore({'test_cart': {'shop.cart'}, 'test_users': {'shop.users'}})
    >>> changes = ChangeSet(changed_production=frozenset({'shop.cart'}))
    >>> result = select(changes, graph, {'test_cart', 'test_users'})
    >>> result.tests
    ('test_cart',)
    >>> result.per_test
    True
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Iterable

    from pytest_testedby.usage.graph import UsageGraphStore


@dataclass(frozen=True)
class ChangeSet:
    """Modules that changed since their last recorded run.

    A name present in both sets is a test; it is dropped from
    changed_production so the two sets stay disjoint.

    Attributes:
        changed_production: Dotted names of changed production modules.
        changed_tests: Dotted names of changed test modules.
    """

    changed_production: frozenset[str] = field(default_factory=frozenset)
    changed_tests: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        """Freeze the inputs and keep the two sets disjoint."""
        tests = frozenset(self.changed_tests)
        object.__setattr__(self, 'changed_tests', tests)
        object.__setattr__(self, 'changed_production', frozenset(self.changed_production) - tests)

    @property
    def is_empty(self) -> bool:
        """Return True if nothing changed."""
        return not self.changed_production and not self.changed_tests


@dataclass(frozen=True)
class SelectionResult:
    """The test modules chosen to run.

    Attributes:
        tests: Selected test ids in sorted order.
        per_test: True when the selection was derived from the usage graph,
                  False when it degraded to running every known test.
        conservative: Tests selected only because the graph has no entry
                      for them.
    """

    tests: tuple[str, ...]
    per_test: bool
    conservative: frozenset[str] = field(default_factory=frozenset)

    def __contains__(self, test_id: object) -> bool:
        """Check whether a test was selected."""
        return test_id in self.tests

    def __len__(self) -> int:
        """Return the number of selected tests."""
        return len(self.tests)


def select(
    changed: ChangeSet,
    graph: UsageGraphStore,
    all_known_tests: Iterable[str],
) -> SelectionResult:
    """Select the test modules a change set can affect.

    Policy:
    1. Every changed test is selected.
    2. Every test whose recorded usage includes a changed production
       module is selected. The graph already holds the transitive
       runtime touch-set, so one hop is enough.
    3. Every known test without a graph entry is selected and reported
       as conservative.
    4. If the graph is empty, every known test is selected and the
       result is not per-test.

    The function is pure and deterministic: identical inputs produce an
    identical, sorted result.

    Args:
        changed: Changed production and test modules.
        graph: Usage graph from earlier runs.
        all_known_tests: Ids of every test module that exists now.

    Returns:
        The SelectionResult.
    """
    known = set(all_known_tests)

    if graph.is_empty():
        return SelectionResult(
            tests=tuple(sorted(known | changed.changed_tests)),
            per_test=False,
            conservative=frozenset(known | changed.changed_tests),
        )

    selected: set[str] = set(changed.changed_tests)

    for module in sorted(changed.changed_production):
        selected |= graph.tests_using(module)

    unobserved = {test_id for test_id in known if not graph.has_test(test_id)}
    selected |= unobserved

    return SelectionResult(
        tests=tuple(sorted(selected)),
        per_test=True,
        conservative=frozenset(unobserved - changed.changed_tests),
    )


class TestSelector:
    """Selects test modules for a change set using a usage graph.

    Attributes:
        graph: The UsageGraphStore consulted for every selection.
    """

    __test__ = False

    def __init__(self, graph: UsageGraphStore) -> None:
        """Create a TestSelector over a usage graph.

        Args:
            graph: Usage graph from earlier runs.
        """
        self.graph = graph

    def select_tests(self, changed: ChangeSet, all_known_tests: Iterable[str]) -> SelectionResult:
        """Select the test modules a change set can affect.

        Args:
            changed: Changed production and test modules.
            all_known_tests: Ids of every test module that exists now.

        Returns:
            The SelectionResult.
        """
        return select(changed, self.graph, all_known_tests)

    def select_tests_with_stats(
        self,
        changed: ChangeSet,
        all_known_tests: Iterable[str],
    ) -> tuple[SelectionResult, dict[str, Any]]:
        """Select tests and return statistics about the selection.

        Args:
            changed: Changed production and test modules.
            all_known_tests: Ids of every test module that exists now.

        Returns:
            Tuple of (selection, statistics dict). Stats include:
                - selected_count: Number of tests selected
                - known_count: Number of known tests
                - skipped_count: Known tests that were not selected
                - conservative_count: Tests selected without usage data
                - changed_production_count: Changed production modules
                - changed_test_count: Changed test modules
        """
        known = set(all_known_tests)
        result = self.select_tests(changed, known)
        stats = {
            'selected_count': len(result.tests),
            'known_count': len(known),
            'skipped_count': len(known - set(result.tests)),
            'conservative_count': len(result.conservative),
            'changed_production_count': len(changed.changed_production),
            'changed_test_count': len(changed.changed_tests),
        }
        return result, stats
