"""Test runners for pytest-testedby.

A runner executes the selected test modules and reports the production
modules each one touched. Runners are looked up by name from a registry.
"""

from pytest_testedby.runners.protocol import TestRunner
from pytest_testedby.runners.pytest_runner import PytestRunner
from pytest_testedby.runners.registry import RunnerRegistry


default_registry = RunnerRegistry()
default_registry.register(PytestRunner)


__all__ = [
    'PytestRunner',
    'RunnerRegistry',
    'TestRunner',
    'default_registry',
]
