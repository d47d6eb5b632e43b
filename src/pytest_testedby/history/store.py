"""SQLite-backed run history for change detection.

The RunHistoryStore remembers, for every source file that was scanned and
processed, the time of that run. The ChangeScanner compares file
modification times against these records to find what changed.

The whole mapping is held in memory during an invocation. It is read once
by load() and written back once by save(), so an invocation that dies
before save() leaves the previous history untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import sqlite3
from typing import TYPE_CHECKING

from pytest_testedby.storage import open_or_recreate_db, read_rows


if TYPE_CHECKING:
    from collections.abc import Iterator


logger = logging.getLogger(__name__)


def canonical_path(path: str | os.PathLike[str]) -> str:
    """Return the canonical string form of a path used as a store key.

    Symlinks are resolved and case is normalized on case-insensitive
    platforms, so one physical file never produces two records.

    Args:
        path: Absolute or relative file path.

    Returns:
        Absolute, resolved, case-normalized path string.
    """
    return os.path.normcase(str(Path(path).resolve()))


@dataclass(frozen=True)
class RunRecord:
    """Last successfully processed state of one source file.

    Attributes:
        path: Canonical path of the source file.
        last_run_millis: Epoch milliseconds of the run that processed it.
    """

    path: str
    last_run_millis: int


class RunHistoryStore:
    """Mapping from canonical source path to the time it was last run.

    Example:
        >>> store = RunHistoryStore()
        >>> store.set('/tmp/app/models.py', 1700000000000)
        >>> store.get('/tmp/app/models.py')
        1700000000000
        >>> store.get('/tmp/app/views.py') is None
        True
    """

    def __init__(self, records: dict[str, int] | None = None) -> None:
        """Create a store, optionally seeded with path to millis records.

        Args:
            records: Initial records. Keys are canonicalized.
        """
        self._records: dict[str, int] = {}
        for path, millis in (records or {}).items():
            self.set(path, millis)

    @classmethod
    def load(cls, location: Path) -> RunHistoryStore:
        """Read a persisted store.

        A missing file yields an empty store. A corrupt or unreadable file
        also yields an empty store, with a warning: losing history only
        means more files are treated as changed on this run.

        Args:
            location: Path of the SQLite database file.

        Returns:
            The loaded store. Never raises for I/O or format problems.
        """
        store = cls()
        try:
            if not location.exists():
                logger.debug('No run history at %s, starting empty', location)
                return store
            rows = read_rows(location, 'SELECT path, last_run_millis FROM runs')
        except (sqlite3.Error, OSError) as exc:
            logger.warning('Run history at %s is unreadable (%s), treating every file as changed', location, exc)
            return store

        for path, millis in rows:
            if isinstance(path, str) and isinstance(millis, int):
                store._records[path] = millis
            else:
                logger.warning('Skipping malformed run record %r in %s', (path, millis), location)
        logger.debug('Loaded %d run records from %s', len(store._records), location)
        return store

    def get(self, path: str | os.PathLike[str]) -> int | None:
        """Return the last run time of a file, or None if it was never run.

        Args:
            path: Path of the source file.

        Returns:
            Epoch milliseconds, or None when there is no record.
        """
        return self._records.get(canonical_path(path))

    def set(self, path: str | os.PathLike[str], epoch_millis: int) -> None:
        """Record the last run time of a file, overwriting any previous one.

        Args:
            path: Path of the source file.
            epoch_millis: Epoch milliseconds of the run.
        """
        self._records[canonical_path(path)] = int(epoch_millis)

    def record(self, path: str | os.PathLike[str]) -> RunRecord | None:
        """Return the full RunRecord for a file, or None if absent."""
        key = canonical_path(path)
        if key not in self._records:
            return None
        return RunRecord(key, self._records[key])

    def paths(self) -> Iterator[str]:
        """Iterate over the canonical paths that have records."""
        yield from self._records

    def prune_missing(self) -> int:
        """Drop records for files that no longer exist.

        Returns:
            Number of records removed.
        """
        missing = [path for path in self._records if not os.path.exists(path)]
        for path in missing:
            del self._records[path]
        if missing:
            logger.debug('Pruned %d run records for deleted files', len(missing))
        return len(missing)

    def save(self, location: Path) -> bool:
        """Write the full mapping, replacing whatever was stored before.

        The write happens in a single transaction. Failure is logged and
        reported through the return value; the only consequence is that the
        next run treats more files as changed than strictly necessary.

        Args:
            location: Path of the SQLite database file. Parent directories
                      are created if they don't exist.

        Returns:
            True if the store was written, False otherwise.
        """
        rows = sorted(self._records.items())
        try:
            location.parent.mkdir(parents=True, exist_ok=True)
            conn = open_or_recreate_db(location, _RUNS_SCHEMA)
            try:
                with conn:
                    conn.execute('DELETE FROM runs')
                    conn.executemany('INSERT INTO runs (path, last_run_millis) VALUES (?, ?)', rows)
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            logger.warning('Unable to write run history to %s: %s', location, exc)
            return False
        logger.debug('Saved %d run records to %s', len(rows), location)
        return True

    def __len__(self) -> int:
        """Return the number of records."""
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        """Check whether a file has a record."""
        if not isinstance(path, (str, os.PathLike)):
            return False
        return canonical_path(path) in self._records


_RUNS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS runs (
        path TEXT PRIMARY KEY,
        last_run_millis INTEGER NOT NULL
    )
"""
