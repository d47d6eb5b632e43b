"""Usage-graph based test selection.

Records which production modules each test module touches while it runs
and uses that record to select the tests a change can affect.

The key insight:
    usage_graph = {
        "test_cart": {"shop.cart", "shop.prices"},
        "test_users": {"shop.users"},
    }

    # shop.prices changed -> run test_cart, not the whole suite

Exports:
    UsageGraphStore: Persisted test to module usage graph
    UsageCollector: Turns per-test coverage data into usage
    UsageReport: Usage handed back by a test run
    ChangeSet: Changed production and test modules
    SelectionResult: Test modules chosen to run
    TestSelector: Selects tests for a change set
"""

from __future__ import annotations

from pytest_testedby.usage.collector import UsageCollector, UsageReport
from pytest_testedby.usage.graph import UsageGraphStore
from pytest_testedby.usage.selector import ChangeSet, SelectionResult, TestSelector, select


__all__ = [
    'ChangeSet',
    'SelectionResult',
    'TestSelector',
    'UsageCollector',
    'UsageGraphStore',
    'UsageReport',
    'select',
]
