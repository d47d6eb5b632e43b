"""Exception hierarchy for pytest-testedby.

Only configuration problems are fatal. Store I/O problems are logged and
absorbed where they happen, and selection never raises.
"""

from __future__ import annotations


class TestedByError(Exception):
    """Base class for all pytest-testedby errors."""

    __test__ = False


class ConfigurationError(TestedByError):
    """Raised for invalid configuration, aborting the run before selection.

    Examples are two source files mapping onto the same module name, a
    negative staleness tolerance, or an unknown runner name.
    """
