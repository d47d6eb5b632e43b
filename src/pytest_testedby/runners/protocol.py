"""Protocol definition for test runners.

A runner executes the selected test modules while a UsageCapture records
which production modules each of them touches. All runners must
implement the TestRunner protocol.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Protocol,
    runtime_checkable,
)


if TYPE_CHECKING:
    from collections.abc import Sequence

    from pytest_testedby.history.scanner import SourceUnit
    from pytest_testedby.usage.capture import UsageCapture
    from pytest_testedby.usage.collector import UsageReport


@runtime_checkable
class TestRunner(Protocol):
    """Protocol for all test runners.

    Attributes:
        name: Unique identifier for this runner (e.g., 'pytest').
    """

    @property
    def name(self) -> str:
        """Return unique identifier for this runner."""
        ...

    def run(self, tests: Sequence[SourceUnit], capture: UsageCapture) -> UsageReport:
        """Execute test modules and report their usage.

        Args:
            tests: The selected test modules, in selection order.
            capture: Usage capture to register with the test session.

        Returns:
            The exit status and, for every test module that ran, the
            production modules it touched.
        """
        ...
