#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds the HNSW graph from the canonical record table, e.g. after many
deletions or after changing HNSW_M / HNSW_EF_CONSTRUCTION / HNSW_SEED.
The rebuild inserts records in write order, so it is deterministic.
"""

import argparse
import sys
from pathlib import Path

# Allow running from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from recall.core.config import DB_PATH, open_store
from recall.core.errors import RecallError


def main(argv=None):
    """Rebuild vector index from the record table."""
    parser = argparse.ArgumentParser(description="Rebuild the recall vector index from stored records")
    parser.add_argument("--db", default=DB_PATH, help="database file (SQLite)")
    args = parser.parse_args(argv)

    if not Path(args.db).exists():
        print(f"ERROR: Database {args.db} does not exist")
        sys.exit(1)

    print("Starting vector index rebuild...")

    try:
        store = open_store(args.db)
    except RecallError as e:
        print(f"ERROR: Failed to open store: {e}")
        sys.exit(1)

    record_count = store.count()
    print(f"Found {record_count} records in canonical store")

    if not record_count:
        print("No entries to rebuild. Exiting.")
        return

    try:
        rebuilt = store.rebuild_index()
    except RecallError as e:
        print(f"ERROR: Rebuild failed: {e}")
        sys.exit(1)

    print(f"✓ Successfully rebuilt index with {rebuilt} vectors")

    # Quick smoke test - the first record must find itself
    try:
        sample = store.get(store.ids()[0])
        results = store.search(sample.vector, k=1)
        if results and results[0].id == sample.id:
            print(f"✓ Verification search returned {results[0].id}")
        else:
            print("WARNING: Verification search did not return the sample record")
    except Exception as e:
        print(f"WARNING: Verification search failed: {e}")

    print("Index rebuild complete!")


if __name__ == "__main__":
    main()
