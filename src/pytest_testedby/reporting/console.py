"""Console reporter for selective test runs.

Produces human-readable output describing what changed, which test
modules were selected and why, and whether the run data was saved.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO


if TYPE_CHECKING:
    from pytest_testedby.orchestrator import RunPlan, RunResult


class ConsoleReporter:
    """Reporter that writes selection summaries to the console.

    Produces output in the following format:

        ==================== pytest-testedby selection =====================

        Changed: 2 production modules, 1 test module
        Selected: 3 of 40 test modules

          test_cart
          test_prices      (no usage data yet)
          test_users

        =====================================================================

    Attributes:
        output: The file-like object to write to.
        list_limit: Maximum number of selected tests listed by name.
    """

    BORDER_CHAR = '='
    BORDER_WIDTH = 70

    def __init__(self, output: TextIO | None = None, list_limit: int = 20) -> None:
        """Initialize the console reporter.

        Args:
            output: File-like object to write to. Defaults to sys.stdout.
            list_limit: Maximum number of selected tests listed by name.
        """
        self.output = output or sys.stdout
        self.list_limit = list_limit

    def write_plan(self, plan: RunPlan) -> None:
        """Write the selection summary of a run plan.

        Args:
            plan: The RunPlan produced by the orchestrator.
        """
        self._write_header()
        self._write_blank_line()
        for line in self.summary_lines(plan):
            self._write_line(line)
        self._write_blank_line()
        self._write_footer()

    def write_result(self, result: RunResult) -> None:
        """Write the selection summary and outcome of a finished run.

        Args:
            result: The RunResult returned by the orchestrator.
        """
        if result.plan is not None:
            self.write_plan(result.plan)
        for line in self.outcome_lines(result):
            self._write_line(line)

    def summary_lines(self, plan: RunPlan) -> list[str]:
        """Return the summary of a plan as lines of text."""
        selection = plan.selection
        lines = [
            f'Changed: {_count(len(plan.changes.changed_production), "production module")}, '
            f'{_count(len(plan.changes.changed_tests), "test module")}',
            f'Selected: {len(selection.tests)} of {_count(len(plan.known_tests), "test module")}',
        ]
        if not selection.per_test:
            lines.append('No usage data recorded yet: running every test module.')
            return lines

        if selection.tests:
            lines.append('')
            for test_id in selection.tests[: self.list_limit]:
                note = '  (no usage data yet)' if test_id in selection.conservative else ''
                lines.append(f'  {test_id}{note}')
            hidden = len(selection.tests) - self.list_limit
            if hidden > 0:
                lines.append(f'  ... and {hidden} more')
        return lines

    def outcome_lines(self, result: RunResult) -> list[str]:
        """Return the outcome of a run as lines of text."""
        if not result.succeeded:
            return [f'Selective run failed: {result.error}']
        lines: list[str] = []
        if result.report is not None and result.report.usage:
            lines.append(f'Recorded usage of {_count(len(result.report.usage), "test module")}.')
        if not (result.history_saved and result.graph_saved):
            lines.append('Warning: run data could not be saved, the next run may select more tests.')
        return lines

    def _write_header(self) -> None:
        """Write the report header."""
        title = ' pytest-testedby selection '
        border_len = (self.BORDER_WIDTH - len(title)) // 2
        header = f'{self.BORDER_CHAR * border_len}{title}{self.BORDER_CHAR * border_len}'
        self._write_line(header)

    def _write_footer(self) -> None:
        """Write the report footer."""
        self._write_line(self.BORDER_CHAR * self.BORDER_WIDTH)

    def _write_blank_line(self) -> None:
        """Write a blank line."""
        self.output.write('\n')

    def _write_line(self, text: str) -> None:
        """Write a line of text followed by newline."""
        self.output.write(text + '\n')


def _count(n: int, noun: str) -> str:
    return f'{n} {noun}' if n == 1 else f'{n} {noun}s'
