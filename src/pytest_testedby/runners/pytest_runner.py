"""In-process pytest runner."""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import TYPE_CHECKING

import pytest


if TYPE_CHECKING:
    from collections.abc import Sequence

    from pytest_testedby.history.scanner import SourceUnit
    from pytest_testedby.usage.capture import UsageCapture
    from pytest_testedby.usage.collector import UsageReport


logger = logging.getLogger(__name__)


class PytestRunner:
    """Runs the selected test modules with pytest.main() in this process.

    Attributes:
        extra_args: Additional command-line arguments passed to pytest.
    """

    def __init__(self, extra_args: Sequence[str] = ()) -> None:
        self.extra_args = list(extra_args)

    @property
    def name(self) -> str:
        """Return 'pytest'."""
        return 'pytest'

    def build_args(self, tests: Sequence[SourceUnit]) -> list[str]:
        """Build the pytest argument list for the selected test modules."""
        # testedby's own plugin must not re-select inside the nested session
        return ['-p', 'no:testedby', *self.extra_args, *(str(unit.path) for unit in tests)]

    def run(self, tests: Sequence[SourceUnit], capture: UsageCapture) -> UsageReport:
        """Run the test modules and return the captured usage."""
        args = self.build_args(tests)
        logger.debug('Running pytest %s', ' '.join(args))
        exit_code = pytest.main(args, plugins=[capture])
        report = replace(capture.report(), exit_code=int(exit_code))
        logger.debug('pytest exited with %s after running %d test modules', exit_code, len(report.usage))
        return report
