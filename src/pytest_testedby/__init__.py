"""pytest-testedby: Run only the tests your change can break.

pytest-testedby records which production modules each test module touches
while it runs, and on the next run selects only the test modules that
exercised something that changed since then.

Example:
    Run only the affected tests::

        $ pytest --testedby

    Print the selection without running anything::

        $ testedby select

    Tolerate coarse filesystem timestamps::

        $ pytest --testedby --testedby-stale-millis=2000
"""

from __future__ import annotations


__version__ = '0.3.0'
__all__ = ['__version__']
