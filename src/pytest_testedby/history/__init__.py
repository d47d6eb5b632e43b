"""Run history and change detection.

Provides the persisted record of when each source file was last run and
the scanner that compares it against the filesystem.
"""

from pytest_testedby.history.scanner import ChangeScanner, SourceUnit, module_name, scan
from pytest_testedby.history.store import RunHistoryStore, RunRecord, canonical_path


__all__ = [
    'ChangeScanner',
    'RunHistoryStore',
    'RunRecord',
    'SourceUnit',
    'canonical_path',
    'module_name',
    'scan',
]
