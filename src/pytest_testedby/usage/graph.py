"""Persisted usage graph from test modules to the production modules they touch.

The graph is populated from coverage data captured while tests run:
for every executed test module it records the full set of production
modules that executed code. The next invocation consults it to decide
which tests a change can affect.

A test's edges are only ever replaced as a whole. Merging edge sets
across runs would keep dependencies alive after a refactor removed them,
and those stale edges would hide the real ones behind run-everything noise.

Example:
    >>> graph = UsageGraphStore()
    >>> graph.replace_edges('test_cart', {'shop.cart', 'shop.prices'})
    >>> sorted(graph.edges_for('test_cart'))
    ['shop.cart', 'shop.prices']
    >>> graph.replace_edges('test_cart', {'shop.basket'})
    >>> sorted(graph.edges_for('test_cart'))
    ['shop.basket']
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import TYPE_CHECKING

from pytest_testedby.storage import open_or_recreate_db, read_rows


if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from pathlib import Path


logger = logging.getLogger(__name__)

_USAGE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS usage (
        test_id TEXT PRIMARY KEY,
        modules_json TEXT NOT NULL
    )
"""


class UsageGraphStore:
    """Adjacency mapping from test id to the production modules it exercised.

    A test with an entry, even an empty one, has been instrumented at least
    once. A test without an entry has never been observed, which the
    selector treats very differently from "touches nothing".
    """

    def __init__(self, edges: dict[str, Iterable[str]] | None = None) -> None:
        """Create a graph, optionally seeded with test to modules edges.

        Args:
            edges: Initial adjacency mapping.
        """
        self._edges: dict[str, frozenset[str]] = {}
        for test_id, modules in (edges or {}).items():
            self.replace_edges(test_id, modules)

    @classmethod
    def load(cls, location: Path) -> UsageGraphStore:
        """Read a persisted graph.

        A missing file yields an empty graph. A corrupt file also yields
        an empty graph, with a warning, which makes the next selection
        fall back to running every test.

        Args:
            location: Path of the SQLite database file.

        Returns:
            The loaded graph. Never raises for I/O or format problems.
        """
        graph = cls()
        try:
            if not location.exists():
                logger.debug('No usage graph at %s, starting empty', location)
                return graph
            rows = read_rows(location, 'SELECT test_id, modules_json FROM usage')
        except (sqlite3.Error, OSError) as exc:
            logger.warning('Usage graph at %s is unreadable (%s), all tests will run', location, exc)
            return graph

        for test_id, modules_json in rows:
            try:
                modules = json.loads(str(modules_json))
            except json.JSONDecodeError:
                modules = None
            if not isinstance(test_id, str) or not isinstance(modules, list):
                logger.warning('Skipping malformed usage entry for %r in %s', test_id, location)
                continue
            graph._edges[test_id] = frozenset(str(module) for module in modules)
        logger.debug('Loaded usage edges for %d tests from %s', len(graph._edges), location)
        return graph

    def save(self, location: Path) -> bool:
        """Write the whole graph, replacing whatever was stored before.

        Args:
            location: Path of the SQLite database file. Parent directories
                      are created if they don't exist.

        Returns:
            True if the graph was written, False if writing failed.
        """
        rows = [(test_id, json.dumps(sorted(modules))) for test_id, modules in sorted(self._edges.items())]
        try:
            location.parent.mkdir(parents=True, exist_ok=True)
            conn = open_or_recreate_db(location, _USAGE_SCHEMA)
            try:
                with conn:
                    conn.execute('DELETE FROM usage')
                    conn.executemany('INSERT INTO usage (test_id, modules_json) VALUES (?, ?)', rows)
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            logger.warning('Unable to write usage graph to %s: %s', location, exc)
            return False
        logger.debug('Saved usage edges for %d tests to %s', len(rows), location)
        return True

    def edges_for(self, test_id: str) -> frozenset[str]:
        """Return the production modules a test exercised in its last captured run.

        Args:
            test_id: The test module id.

        Returns:
            The modules, or an empty set for a test with no entry.
        """
        return self._edges.get(test_id, frozenset())

    def replace_edges(self, test_id: str, modules: Iterable[str]) -> None:
        """Replace a test's complete edge set.

        Args:
            test_id: The test module id.
            modules: Every production module the test exercised in this run.
        """
        self._edges[test_id] = frozenset(modules)

    def has_test(self, test_id: str) -> bool:
        """Return True if the test has ever been instrumented."""
        return test_id in self._edges

    def tests(self) -> Iterator[str]:
        """Iterate over the ids of all instrumented tests."""
        yield from self._edges

    def tests_using(self, module: str) -> set[str]:
        """Return the tests whose edge set contains a module.

        Args:
            module: Dotted production module name.

        Returns:
            Set of test ids.
        """
        return {test_id for test_id, modules in self._edges.items() if module in modules}

    def prune(self, known_tests: Iterable[str]) -> set[str]:
        """Remove entries for tests that no longer exist.

        Args:
            known_tests: Ids of every test module that exists now.

        Returns:
            The ids that were removed.
        """
        known = set(known_tests)
        stale = {test_id for test_id in self._edges if test_id not in known}
        for test_id in stale:
            del self._edges[test_id]
        if stale:
            logger.debug('Pruned usage edges of %d removed tests', len(stale))
        return stale

    def is_empty(self) -> bool:
        """Return True if no test has been instrumented yet."""
        return not self._edges

    def __len__(self) -> int:
        """Return the number of instrumented tests."""
        return len(self._edges)
