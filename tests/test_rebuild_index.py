"""
Tests for the index rebuild maintenance script.
"""

import sqlite3
from unittest.mock import patch

import pytest

from recall.core.config import open_store
from recall.core.ingest import IngestionPipeline
from recall.vector.embeddings import DeterministicHashEmbedding
from scripts.rebuild_index import main


@pytest.fixture
def populated_db(tmp_path):
    """A store with three records written through the normal pipeline."""
    db_path = str(tmp_path / "vector.db")
    store = open_store(db_path)
    pipeline = IngestionPipeline(store, DeterministicHashEmbedding(store.dimension))
    pipeline.add_batch([
        {"input": "alpha", "result": "first", "data": {"id": "a"}},
        {"input": "beta", "result": "second", "data": {"id": "b"}},
        {"input": "gamma", "result": "third", "data": {"id": "c"}},
    ])
    return db_path


def test_rebuild_index_successful(capfd, populated_db):
    """Test successful index rebuild."""
    main(["--db", populated_db])

    # Verify output
    captured = capfd.readouterr()
    assert "Starting vector index rebuild..." in captured.out
    assert "Found 3 records in canonical store" in captured.out
    assert "✓ Successfully rebuilt index with 3 vectors" in captured.out
    assert "✓ Verification search returned a" in captured.out
    assert "Index rebuild complete!" in captured.out


def test_rebuild_repairs_missing_graph_rows(capfd, populated_db):
    with sqlite3.connect(populated_db) as conn:
        conn.execute("DELETE FROM graph_nodes")
        conn.commit()

    main(["--db", populated_db])

    with sqlite3.connect(populated_db) as conn:
        assert conn.execute("SELECT COUNT(*) FROM graph_nodes").fetchone()[0] == 3
    assert "Index rebuild complete!" in capfd.readouterr().out


def test_rebuild_index_empty_store(capfd, tmp_path):
    """Test rebuild with no records."""
    db_path = str(tmp_path / "empty.db")
    open_store(db_path)

    main(["--db", db_path])

    captured = capfd.readouterr()
    assert "Found 0 records in canonical store" in captured.out
    assert "No entries to rebuild. Exiting." in captured.out
    assert "Successfully rebuilt" not in captured.out


def test_rebuild_index_missing_database(capfd, tmp_path):
    """Test that a missing database is reported instead of created."""
    db_path = tmp_path / "missing.db"

    with pytest.raises(SystemExit) as exc_info:
        main(["--db", str(db_path)])

    assert exc_info.value.code == 1
    assert "does not exist" in capfd.readouterr().out
    assert not db_path.exists()


def test_rebuild_verification_failure_is_a_warning(capfd, populated_db):
    """A failing smoke search is reported but does not abort."""
    with patch("recall.core.store.RecordStore.search", side_effect=RuntimeError("boom")):
        main(["--db", populated_db])

    captured = capfd.readouterr()
    assert "WARNING: Verification search failed: boom" in captured.out
    assert "Index rebuild complete!" in captured.out
