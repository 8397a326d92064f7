"""
SQLite persistence: one database file per store, holding the record table and
the serialized HNSW graph.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import ensure_db_directory
from .errors import StorageIOError

# Suffixes SQLite may leave next to the main database file
SIDECAR_SUFFIXES = ("-journal", "-wal", "-shm")


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    try:
        conn = sqlite3.connect(db_path, timeout=30)
    except sqlite3.Error as e:
        raise StorageIOError(f"Cannot open database {db_path}: {e}") from e
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Run the body in one IMMEDIATE transaction; commit on success, roll back on error."""
    with get_db(db_path) as conn:
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot start transaction on {db_path}: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            raise


def init_db(db_path: str):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    vector BLOB NOT NULL,
                    input TEXT NOT NULL,
                    result TEXT NOT NULL,
                    data TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # One row per live index node; neighbors is a JSON list of per-layer id lists
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS graph_nodes (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    level INTEGER NOT NULL,
                    neighbors TEXT NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS index_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_graph_nodes_seq ON graph_nodes(seq)')

            conn.commit()
    except sqlite3.Error as e:
        raise StorageIOError(f"Failed to initialize database {db_path}: {e}") from e


def health_check(db_path: str) -> bool:
    """Check database health."""
    if not Path(db_path).exists():
        return False
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]
            required_tables = ['records', 'graph_nodes', 'index_meta']
            return all(table in table_names for table in required_tables)
    except (sqlite3.Error, StorageIOError):
        return False


def nuke(db_path: str) -> bool:
    """Delete the database file and its sidecars. Returns False if nothing existed."""
    removed = False
    path = Path(db_path)
    for candidate in [path] + [Path(str(path) + suffix) for suffix in SIDECAR_SUFFIXES]:
        try:
            candidate.unlink()
            removed = True
        except FileNotFoundError:
            continue
        except OSError as e:
            raise StorageIOError(f"Failed to remove {candidate}: {e}") from e
    return removed
