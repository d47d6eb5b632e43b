"""Shared SQLite helpers for the persisted stores."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from pathlib import Path


logger = logging.getLogger(__name__)


def open_or_recreate_db(location: Path, schema: str) -> sqlite3.Connection:
    """Open a store database, recreating it if corrupted.

    Attempts to connect to the database and initialize the schema.
    If a DatabaseError occurs (indicating corruption), the file is
    deleted and a fresh database is created.

    Args:
        location: Path of the SQLite database file.
        schema: CREATE TABLE statement for the store's table.

    Returns:
        An open SQLite connection with initialized schema.
    """
    conn: sqlite3.Connection | None = None
    try:
        conn = sqlite3.connect(str(location))
        conn.execute(schema)
        conn.commit()
    except sqlite3.DatabaseError:
        logger.warning('Store database corrupted at %s, recreating', location)
        if conn is not None:  # pragma: no branch
            conn.close()
        location.unlink(missing_ok=True)
        conn = sqlite3.connect(str(location))
        conn.execute(schema)
        conn.commit()
    return conn


def read_rows(location: Path, query: str) -> list[tuple[object, ...]]:
    """Run a read-only query against a store database and close it.

    Args:
        location: Path of an existing SQLite database file.
        query: SELECT statement to run.

    Returns:
        All result rows.

    Raises:
        sqlite3.Error: If the file is not a readable store database.
    """
    conn = sqlite3.connect(f'{location.resolve().as_uri()}?mode=ro', uri=True)
    try:
        return conn.execute(query).fetchall()
    finally:
        conn.close()
