"""
Record store: the canonical id-keyed record table plus the HNSW graph built
over its vectors, persisted together in one SQLite file.

Every write runs under the store's write lock and inside a single SQLite
transaction that carries both the record rows and the changed graph rows, so
a batch is either fully visible or not visible at all. If a write fails, the
transaction is rolled back and the in-memory graph is reloaded from the
committed state.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..util.logging import logger
from ..util.rwlock import ReadWriteLock
from ..vector.index import HNSWIndex
from ..vector.types import IndexNode, QueryResult
from . import db
from .errors import BatchAtomicityViolation, StorageIOError, ValidationError
from .schema import Record, SearchHit

RecordLike = Union[Record, Tuple[str, Sequence[float], str, str, Optional[Dict[str, Any]]]]

# Graph parameters persisted in index_meta
GRAPH_PARAMS = ("m", "ef_construction", "seed")


def _encode_vector(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).copy()


class RecordStore:
    """Persistent vector record store with an HNSW index.

    Args:
        db_path: SQLite file backing this store
        dimension: Vector length every record must have
        metric: Distance metric (l2, cosine or ip), fixed for the file's lifetime
        m: Maximum edges per node per layer (layer 0 allows 2*m)
        ef_construction: Candidate list size used while inserting
        seed: Seed for layer assignment
    """

    def __init__(self, db_path: str, dimension: int = 384, metric: str = "l2", m: int = 50,
                 ef_construction: int = 50, seed: int = 42):
        self.db_path = str(db_path)
        self.dimension = dimension
        self.metric = metric.lower() if isinstance(metric, str) else metric
        self.m = m
        self.ef_construction = ef_construction
        self.seed = seed
        self._lock = ReadWriteLock()
        # Validates the metric and parameters before anything touches disk
        self._index = self._new_index()
        self._initialized = False
        self._closed = False
        # Bumped by every committed write; tells handles on the same file apart
        self._generation = 0
        self._open()

    def __repr__(self):
        return f"RecordStore(db_path={self.db_path!r}, dimension={self.dimension}, metric={self.metric!r})"

    def _new_index(self) -> HNSWIndex:
        return HNSWIndex(
            dimension=self.dimension,
            metric=self.metric,
            m=self.m,
            ef_construction=self.ef_construction,
            seed=self.seed,
        )

    # Opening and loading

    def _open(self) -> None:
        db.init_db(self.db_path)
        try:
            with db.transaction(self.db_path) as conn:
                meta = self._read_meta(conn)
                if "dimension" in meta and int(meta["dimension"]) != self.dimension:
                    raise ValidationError(
                        f"Store {self.db_path} holds {meta['dimension']}-dimensional vectors, not {self.dimension}")
                if "metric" in meta and meta["metric"] != self.metric:
                    raise ValidationError(
                        f"Store {self.db_path} was built with metric {meta['metric']!r}, not {self.metric!r}")
                self._load_index(conn, meta)
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to open store {self.db_path}: {e}") from e
        self._initialized = True

    def _ensure_open(self) -> None:
        self._check_not_closed()
        if not self._initialized:
            self._open()

    def _check_not_closed(self) -> None:
        if self._closed:
            raise StorageIOError(f"Store {self.db_path} is closed")

    @staticmethod
    def _read_meta(conn: sqlite3.Connection) -> Dict[str, str]:
        return dict(conn.execute("SELECT key, value FROM index_meta").fetchall())

    def _stored_generation(self) -> int:
        """Generation of the last committed write, as recorded in the file."""
        try:
            with db.get_db(self.db_path) as conn:
                row = conn.execute("SELECT value FROM index_meta WHERE key = 'generation'").fetchone()
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to read index metadata from {self.db_path}: {e}") from e
        return int(row[0]) if row else 0

    def _load_index(self, conn: sqlite3.Connection, meta: Dict[str, str] = None) -> None:
        """Load the persisted graph, rebuilding it when it is missing or stale.

        Runs inside ``conn``'s write transaction, so no other handle can commit
        between reading the graph and adopting it.
        """
        meta = self._read_meta(conn) if meta is None else meta
        self._generation = int(meta.get("generation", 0))
        rows = conn.execute('''
            SELECT r.id, r.vector, g.seq, g.level, g.neighbors
            FROM records r LEFT JOIN graph_nodes g ON g.id = r.id
        ''').fetchall()
        graph_rows = conn.execute("SELECT COUNT(*) FROM graph_nodes").fetchone()[0]

        stale_params = [p for p in GRAPH_PARAMS if p in meta and meta[p] != str(getattr(self, p))]
        if stale_params:
            logger.warning(f"Graph parameters changed ({', '.join(stale_params)}); rebuilding index")
            self._rebuild(conn)
            return

        if graph_rows != len(rows) or any(row[2] is None for row in rows):
            if rows or graph_rows:
                logger.warning(f"Graph for {self.db_path} is out of sync with its records; rebuilding index")
                self._rebuild(conn)
            else:
                self._index = self._new_index()
            return

        nodes = [
            IndexNode(id=row[0], seq=row[2], level=row[3], vector=_decode_vector(row[1]),
                      neighbors=json.loads(row[4]))
            for row in rows
        ]
        index = self._new_index()
        try:
            index.restore(nodes, meta.get("entry_point"), int(meta.get("next_seq", 0)))
        except ValidationError as e:
            logger.warning(f"Persisted graph is inconsistent ({e}); rebuilding index")
            self._rebuild(conn)
            return

        self._index = index
        logger.log_index_operation("loaded", {"nodes": len(index), "entry_point": index.entry_point,
                                              "generation": self._generation})

    def _reload(self) -> None:
        """Replace the in-memory graph with the committed one."""
        try:
            with db.transaction(self.db_path) as conn:
                self._load_index(conn)
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to load index from {self.db_path}: {e}") from e

    def _sync(self, conn: sqlite3.Connection) -> None:
        """Catch up with writes committed by other handles on the same file.

        Called at the start of every write transaction; the IMMEDIATE lock
        keeps the file still until this handle commits.
        """
        meta = self._read_meta(conn)
        if int(meta.get("generation", 0)) != self._generation:
            logger.log_index_operation("reload", {"reason": "written by another handle",
                                                  "generation": meta.get("generation")})
            self._load_index(conn, meta)

    def _refresh(self) -> None:
        """Before a read, reload the graph if another handle has committed since."""
        if self._closed or not self._initialized or not Path(self.db_path).exists():
            return
        if self._stored_generation() == self._generation:
            return
        with self._lock.write():
            # A writer on this handle may have committed while we waited
            if self._initialized and not self._closed and self._stored_generation() != self._generation:
                logger.log_index_operation("reload", {"reason": "written by another handle"})
                self._reload()

    def _rebuild(self, conn: sqlite3.Connection) -> int:
        """Rebuild the graph from the record table in write order and persist it
        inside ``conn``'s transaction.

        Callers must hold the write lock (or be constructing the store).
        """
        index = self._new_index()
        rows = conn.execute("SELECT id, vector FROM records ORDER BY rowid").fetchall()
        for record_id, blob in rows:
            index.insert(record_id, _decode_vector(blob))
        conn.execute("DELETE FROM graph_nodes")
        self._flush_graph(conn, index)

        self._index = index
        logger.log_index_operation("rebuilt", {"nodes": len(index), "max_level": index.max_level})
        return len(index)

    def _flush_graph(self, conn: sqlite3.Connection, index: HNSWIndex = None) -> None:
        """Write changed graph nodes and index metadata inside ``conn``'s transaction.

        Every flush bumps the generation so other handles on the file notice
        the write.
        """
        index = index or self._index
        dirty, removed = index.drain_changes()

        conn.executemany("DELETE FROM graph_nodes WHERE id = ?", [(i,) for i in removed - dirty])
        rows = []
        for node_id in dirty:
            seq, level, neighbors = index.export_node(node_id)
            rows.append((node_id, seq, level, json.dumps(neighbors)))
        conn.executemany(
            "INSERT OR REPLACE INTO graph_nodes (id, seq, level, neighbors) VALUES (?, ?, ?, ?)", rows)

        row = conn.execute("SELECT value FROM index_meta WHERE key = 'generation'").fetchone()
        generation = max(self._generation, int(row[0]) if row else 0) + 1
        meta = {
            "dimension": str(self.dimension),
            "metric": self.metric,
            "m": str(self.m),
            "ef_construction": str(self.ef_construction),
            "seed": str(self.seed),
            "next_seq": str(index.next_seq),
            "entry_point": index.entry_point,
            "generation": str(generation),
        }
        conn.executemany("INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", list(meta.items()))
        self._generation = generation

    def _restore_after_failure(self, error: Exception) -> None:
        """Reload the committed graph after a failed write."""
        try:
            self._reload()
        except Exception as reload_error:
            raise BatchAtomicityViolation(
                f"Write failed ({error}) and the index could not be restored: {reload_error}") from reload_error

    # Writes

    def _prepare(self, records: Iterable[RecordLike]) -> List[Tuple[Record, np.ndarray, str]]:
        """Validate every member of a batch before anything is written."""
        prepared = []
        seen = set()
        for position, item in enumerate(records):
            try:
                record = item if isinstance(item, Record) else Record(*item)
            except TypeError as e:
                raise ValidationError(
                    f"Record {position} must be a Record or an (id, vector, input, result[, data]) tuple") from e
            if record.data is None:
                record.data = {}

            if not isinstance(record.id, str) or not record.id.strip():
                raise ValidationError(f"Record {position} has an empty or non-string id")
            if record.id in seen:
                raise ValidationError(f"Record id {record.id!r} appears more than once in the batch")
            if not isinstance(record.input, str) or not record.input.strip():
                raise ValidationError(f"Record {record.id!r} has an empty input")
            if not isinstance(record.result, str) or not record.result.strip():
                raise ValidationError(f"Record {record.id!r} has an empty result")
            if not isinstance(record.data, dict):
                raise ValidationError(f"Record {record.id!r} data must be a mapping")

            vector = self._index.check_vector(record.vector)
            try:
                data_json = json.dumps(record.data)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Record {record.id!r} data is not JSON serializable: {e}") from e

            seen.add(record.id)
            prepared.append((record, vector, data_json))
        return prepared

    def put(self, record_id: str, vector: Sequence[float], input: str, result: str,
            data: Optional[Dict[str, Any]] = None) -> Record:
        """Insert or replace a single record."""
        record = Record(id=record_id, vector=vector, input=input, result=result, data=data or {})
        self.put_batch([record])
        logger.log_record_operation("put", record_id, input)
        return record

    def put_batch(self, records: Iterable[RecordLike]) -> int:
        """Insert or replace all records atomically; returns how many were written."""
        prepared = self._prepare(records)
        if not prepared:
            return 0

        with self._lock.write():
            self._ensure_open()
            try:
                with db.transaction(self.db_path) as conn:
                    self._sync(conn)
                    for record, vector, data_json in prepared:
                        self._index.insert(record.id, vector)
                        conn.execute(
                            "INSERT OR REPLACE INTO records (id, vector, input, result, data) VALUES (?, ?, ?, ?, ?)",
                            (record.id, _encode_vector(vector), record.input, record.result, data_json),
                        )
                    self._flush_graph(conn)
            except sqlite3.Error as e:
                self._restore_after_failure(e)
                logger.log_operation("record.put_batch", "failed", {"count": len(prepared), "error": str(e)})
                raise StorageIOError(f"Batch write to {self.db_path} failed: {e}") from e
            except Exception as e:
                self._restore_after_failure(e)
                logger.log_operation("record.put_batch", "failed", {"count": len(prepared), "error": str(e)})
                raise

        if len(prepared) > 1:
            logger.log_operation("record.put_batch", "success", {"count": len(prepared)})
        return len(prepared)

    def delete(self, record_id: str) -> bool:
        """Delete a record and its index node. Returns False if the id is unknown."""
        if not isinstance(record_id, str) or not record_id:
            return False

        with self._lock.write():
            self._check_not_closed()
            if not self._initialized:
                return False
            try:
                with db.transaction(self.db_path) as conn:
                    self._sync(conn)
                    cursor = conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
                    existed = cursor.rowcount > 0
                    removed = self._index.remove(record_id)
                    if existed or removed:
                        self._flush_graph(conn)
            except sqlite3.Error as e:
                self._restore_after_failure(e)
                raise StorageIOError(f"Failed to delete {record_id!r}: {e}") from e
            except Exception as e:
                self._restore_after_failure(e)
                raise

        found = existed or removed
        logger.log_record_operation("delete", record_id, status="success" if found else "not_found")
        return found

    def rebuild_index(self) -> int:
        """Rebuild the graph from the record table; returns the node count."""
        with self._lock.write():
            self._ensure_open()
            try:
                with db.transaction(self.db_path) as conn:
                    return self._rebuild(conn)
            except sqlite3.Error as e:
                self._restore_after_failure(e)
                raise StorageIOError(f"Failed to rebuild index for {self.db_path}: {e}") from e

    def nuke(self) -> bool:
        """Delete the store's database file(s) and empty the index."""
        with self._lock.write():
            removed = db.nuke(self.db_path)
            self._index = self._new_index()
            self._initialized = False
        logger.log_operation("store.nuke", "success", {"db_path": self.db_path, "removed": removed})
        return removed

    def close(self) -> None:
        """Release the in-memory graph. Any later call except ``nuke`` raises StorageIOError."""
        with self._lock.write():
            self._index = self._new_index()
            self._initialized = False
            self._closed = True
        logger.log_operation("store.close", "success", {"db_path": self.db_path})

    # Reads

    def get(self, record_id: str) -> Optional[Record]:
        """Get a record by id, or None."""
        with self._lock.read():
            self._check_not_closed()
            if not self._initialized:
                return None
            try:
                with db.get_db(self.db_path) as conn:
                    row = conn.execute(
                        "SELECT id, vector, input, result, data FROM records WHERE id = ?", (record_id,)
                    ).fetchone()
            except sqlite3.Error as e:
                raise StorageIOError(f"Failed to read {record_id!r}: {e}") from e

        if row is None:
            return None
        return Record(
            id=row[0],
            vector=_decode_vector(row[1]).tolist(),
            input=row[2],
            result=row[3],
            data=json.loads(row[4]),
        )

    def count(self) -> int:
        with self._lock.read():
            self._check_not_closed()
            if not self._initialized:
                return 0
            try:
                with db.get_db(self.db_path) as conn:
                    return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            except sqlite3.Error as e:
                raise StorageIOError(f"Failed to count records: {e}") from e

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, record_id) -> bool:
        self._refresh()
        with self._lock.read():
            return record_id in self._index

    def ids(self) -> List[str]:
        """Record ids in insertion order."""
        self._refresh()
        with self._lock.read():
            return self._index.ids()

    def search(self, query_vector: Sequence[float], k: int = 5, ef_search: int = 90,
               radius: Optional[float] = 10.0) -> List[QueryResult]:
        """Ranked (id, distance) matches for a query vector."""
        self._refresh()
        with self._lock.read():
            self._check_not_closed()
            return self._index.search(query_vector, k=k, ef_search=ef_search, radius=radius)

    def search_records(self, query_vector: Sequence[float], k: int = 5, ef_search: int = 90,
                       radius: Optional[float] = 10.0) -> List[SearchHit]:
        """Search and join each match with its stored payload."""
        self._refresh()
        with self._lock.read():
            self._check_not_closed()
            matches = self._index.search(query_vector, k=k, ef_search=ef_search, radius=radius)
            if not matches:
                return []
            placeholders = ",".join("?" for _ in matches)
            try:
                with db.get_db(self.db_path) as conn:
                    rows = conn.execute(
                        f"SELECT id, input, result, data FROM records WHERE id IN ({placeholders})",
                        [m.id for m in matches],
                    ).fetchall()
            except sqlite3.Error as e:
                raise StorageIOError(f"Failed to load search results: {e}") from e

        payloads = {row[0]: row for row in rows}
        hits = []
        for match in matches:
            row = payloads.get(match.id)
            if row is None:
                logger.warning(f"Index node {match.id} has no record row")
                continue
            hits.append(SearchHit(
                distance=match.distance,
                id=match.id,
                result=row[2],
                data=json.loads(row[3]),
                input=row[1],
            ))
        return hits

    def health(self) -> Dict[str, Any]:
        """Summary of the database and graph state."""
        self._refresh()
        with self._lock.read():
            index = self._index
            summary = {
                "db_path": self.db_path,
                "db_health": self._initialized and not self._closed and db.health_check(self.db_path),
                "nodes": len(index),
                "entry_point": index.entry_point,
                "max_level": index.max_level,
                "dimension": self.dimension,
                "metric": self.metric,
            }
        summary["records"] = 0 if self._closed else self.count()
        return summary
