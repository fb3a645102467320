"""
Schema management for the match result store.

The checkpoint database may outlive a single geomatch release: a resumed run
opens whatever file the previous run left behind. ``apply_schema`` brings an
older or empty file up to SCHEMA_VERSION and refuses files written by a newer
release, whose results this version could misread.
"""

import sqlite3
from pathlib import Path

# Highest version recorded by schema.sql
SCHEMA_VERSION = 1

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_current_version(conn: sqlite3.Connection) -> int:
    """Return the schema version of an open result store, 0 for a fresh file."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        # no version table yet
        return 0
    return row[0] if row[0] is not None else 0


def apply_schema(db_path: Path) -> int:
    """Create or upgrade the result store tables. Safe to run repeatedly.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Schema version of the database after applying

    Raises:
        RuntimeError: If the database was written by a newer schema version
    """
    conn = sqlite3.connect(db_path)
    try:
        found = get_current_version(conn)
        if found > SCHEMA_VERSION:
            raise RuntimeError(
                f"Result store {db_path} has schema version {found}; "
                f"this release supports up to {SCHEMA_VERSION}"
            )
        if found < SCHEMA_VERSION:
            conn.executescript(SCHEMA_PATH.read_text())
            conn.commit()
        return get_current_version(conn)
    finally:
        conn.close()
