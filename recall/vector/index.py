"""
Approximate nearest-neighbour index: a hierarchical navigable small-world
(HNSW) graph over float32 vectors.

Layer 0 holds every node and higher layers a geometrically shrinking subset.
Each node keeps at most ``m`` outgoing edges per layer (``2 * m`` on layer 0).
Searches descend greedily from the entry point to layer 1, then run a bounded
best-first search on layer 0.

Deletion repairs eagerly: every node that had an edge to the removed node is
offered the removed node's neighbours through the same diversity heuristic used
on insertion. Afterwards any node the entry point can no longer reach on an
affected layer is linked back in, so every live node stays searchable without
a rebuild.

The index is not thread-safe on its own; ``RecordStore`` serializes writers
and excludes readers while a mutation is in progress.
"""

import heapq
import math
import random
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..core.errors import DimensionMismatch, ValidationError
from .distance import get_metric
from .types import IndexNode, QueryResult

# (distance, insertion sequence, id); sorting these gives the stable ranking
Candidate = Tuple[float, int, str]


class IVectorIndex(ABC):
    """Abstract interface for vector index operations."""

    @abstractmethod
    def insert(self, record_id: str, vector) -> None:
        """Insert a vector, replacing any existing node with the same id."""
        pass

    @abstractmethod
    def remove(self, record_id: str) -> bool:
        """Remove a node; returns False when the id is unknown."""
        pass

    @abstractmethod
    def search(self, query_vector, k: int = 5, ef_search: int = 90,
               radius: Optional[float] = 10.0) -> List[QueryResult]:
        """Search for the nearest vectors and return ranked results."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every node from the index."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class HNSWIndex(IVectorIndex):
    """HNSW graph with pluggable (but fixed per instance) distance metric."""

    def __init__(self, dimension: int = 384, metric: str = "l2", m: int = 50,
                 ef_construction: int = 50, seed: int = 42):
        if dimension < 1:
            raise ValidationError(f"dimension must be >= 1, got {dimension}")
        if m < 2:
            raise ValidationError(f"m must be >= 2, got {m}")
        if ef_construction < 1:
            raise ValidationError(f"ef_construction must be >= 1, got {ef_construction}")

        self._distance = get_metric(metric)
        self.metric = metric.lower()
        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.seed = seed
        self._level_mult = 1.0 / math.log(m)

        self._nodes: Dict[str, IndexNode] = {}
        # record_id -> per-layer set of nodes with an edge pointing at it
        self._inbound: Dict[str, List[Set[str]]] = {}
        self.entry_point: Optional[str] = None
        self.max_level = -1
        self.next_seq = 0

        self._dirty: Set[str] = set()
        self._removed: Set[str] = set()

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, record_id) -> bool:
        return record_id in self._nodes

    def ids(self) -> List[str]:
        """Node ids in insertion order."""
        return [n.id for n in sorted(self._nodes.values(), key=lambda n: n.seq)]

    def get_node(self, record_id: str) -> Optional[IndexNode]:
        return self._nodes.get(record_id)

    def check_vector(self, vector) -> np.ndarray:
        """Coerce to a float32 vector of the index dimension or raise."""
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1:
            raise DimensionMismatch(self.dimension, int(arr.size))
        if arr.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(arr.shape[0]))
        if not np.all(np.isfinite(arr)):
            raise ValidationError("Vector contains NaN or infinite values")
        return arr

    def assign_level(self, record_id: str) -> int:
        """Maximum layer for a node, drawn from an exponential distribution.

        The draw is seeded by the index seed and the record id, so the same
        records always produce the same layer assignment.
        """
        rng = random.Random(f"{self.seed}:{record_id}")
        u = 1.0 - rng.random()
        return int(-math.log(u) * self._level_mult)

    def layer_cap(self, layer: int) -> int:
        return self.m * 2 if layer == 0 else self.m

    # Graph mutation

    def insert(self, record_id: str, vector) -> None:
        arr = self.check_vector(vector)
        if record_id in self._nodes:
            self.remove(record_id)

        level = self.assign_level(record_id)
        node = IndexNode(
            id=record_id,
            seq=self.next_seq,
            level=level,
            vector=arr,
            neighbors=[[] for _ in range(level + 1)],
        )
        self.next_seq += 1
        self._nodes[record_id] = node
        self._inbound[record_id] = [set() for _ in range(level + 1)]
        self._dirty.add(record_id)
        self._removed.discard(record_id)

        if self.entry_point is None:
            self.entry_point = record_id
            self.max_level = level
            return

        entry = [self.entry_point]
        for layer in range(self.max_level, level, -1):
            entry = [self._search_layer(arr, entry, 1, layer)[0][2]]

        for layer in range(min(level, self.max_level), -1, -1):
            found = self._search_layer(arr, entry, self.ef_construction, layer)
            selected = self._select_neighbors(arr, found, self.m)
            self._set_neighbors(record_id, layer, selected)

            cap = self.layer_cap(layer)
            for neighbor_id in selected:
                self._link(neighbor_id, record_id, layer)
                if len(self._nodes[neighbor_id].neighbors[layer]) > cap:
                    self._shrink(neighbor_id, layer, cap)

            entry = [candidate_id for _, _, candidate_id in found]

        if level > self.max_level:
            self.entry_point = record_id
            self.max_level = level

    def remove(self, record_id: str) -> bool:
        node = self._nodes.get(record_id)
        if node is None:
            return False

        for layer in range(node.level + 1):
            orphaned = list(node.neighbors[layer])
            incoming = sorted(self._inbound[record_id][layer], key=lambda i: self._nodes[i].seq)

            self._set_neighbors(record_id, layer, [])
            for source_id in incoming:
                self._unlink(source_id, record_id, layer)

            for source_id in incoming:
                self._repair(source_id, layer, orphaned)

        del self._nodes[record_id]
        del self._inbound[record_id]
        self._dirty.discard(record_id)
        self._removed.add(record_id)

        if self.entry_point == record_id:
            self._elect_entry_point()

        for layer in range(min(node.level, self.max_level) + 1):
            self._reconnect(layer)
        return True

    def clear(self) -> None:
        self._removed.update(self._nodes)
        self._nodes.clear()
        self._inbound.clear()
        self._dirty.clear()
        self.entry_point = None
        self.max_level = -1
        self.next_seq = 0

    def _repair(self, source_id: str, layer: int, orphaned: List[str]) -> None:
        """Offer a removed node's neighbours to a node that pointed at it."""
        source = self._nodes[source_id]
        current = source.neighbors[layer]
        cap = self.layer_cap(layer)
        if len(current) >= cap:
            return

        pool = [i for i in orphaned if i != source_id and i not in current]
        if not pool:
            return

        ranked = self._rank(source.vector, pool)
        selected = self._select_neighbors(source.vector, ranked, cap, keep=current)
        if len(selected) == len(current):
            # The lost edge is always replaced by at least the closest orphan
            selected.append(ranked[0][2])
        self._set_neighbors(source_id, layer, selected)

    def _reachable(self, layer: int, start: str, known: Set[str] = frozenset()) -> Set[str]:
        """Nodes reachable from ``start`` on ``layer`` that are not already in ``known``."""
        found = {start}
        stack = [start]
        while stack:
            for neighbor_id in self._nodes[stack.pop()].neighbors[layer]:
                if neighbor_id not in found and neighbor_id not in known:
                    found.add(neighbor_id)
                    stack.append(neighbor_id)
        return found

    def _reconnect(self, layer: int) -> None:
        """Link every node on ``layer`` that the entry point can no longer reach.

        Each stranded node gets an edge from its closest reachable node with
        spare capacity, which also brings back whatever it points to.
        """
        if self.entry_point is None:
            return
        reached = self._reachable(layer, self.entry_point)
        members = [n for n in self._nodes.values() if n.level >= layer]
        if len(reached) == len(members):
            return

        cap = self.layer_cap(layer)
        stranded = sorted((n for n in members if n.id not in reached), key=lambda n: n.seq)
        for node in stranded:
            if node.id in reached:
                continue
            hosts = [i for i in reached if len(self._nodes[i].neighbors[layer]) < cap] or list(reached)
            host_id = self._rank(node.vector, hosts)[0][2]
            self._link(host_id, node.id, layer)
            if len(self._nodes[host_id].neighbors[layer]) > cap:
                self._shrink(host_id, layer, cap)
            reached |= self._reachable(layer, node.id, reached)

    def _elect_entry_point(self) -> None:
        if not self._nodes:
            self.entry_point = None
            self.max_level = -1
            return
        best = min(self._nodes.values(), key=lambda n: (-n.level, n.seq))
        self.entry_point = best.id
        self.max_level = best.level

    def _link(self, source_id: str, target_id: str, layer: int) -> None:
        neighbors = self._nodes[source_id].neighbors[layer]
        if target_id not in neighbors:
            neighbors.append(target_id)
            self._inbound[target_id][layer].add(source_id)
            self._dirty.add(source_id)

    def _unlink(self, source_id: str, target_id: str, layer: int) -> None:
        neighbors = self._nodes[source_id].neighbors[layer]
        if target_id in neighbors:
            neighbors.remove(target_id)
            self._dirty.add(source_id)
        self._inbound[target_id][layer].discard(source_id)

    def _set_neighbors(self, source_id: str, layer: int, neighbors: List[str]) -> None:
        node = self._nodes[source_id]
        for old in node.neighbors[layer]:
            if old not in neighbors:
                self._inbound[old][layer].discard(source_id)
        for new in neighbors:
            self._inbound[new][layer].add(source_id)
        node.neighbors[layer] = list(neighbors)
        self._dirty.add(source_id)

    def _shrink(self, node_id: str, layer: int, cap: int) -> None:
        """Drop the weakest edges of ``node_id`` until it has ``cap`` left.

        An edge that is its target's only inbound edge on this layer is kept
        ahead of closer ones.
        """
        node = self._nodes[node_id]
        ranked = self._rank(node.vector, node.neighbors[layer])
        sole = [c for c in ranked if self._inbound[c[2]][layer] == {node_id}]
        keep = sole[:cap]
        for candidate in ranked:
            if len(keep) >= cap:
                break
            if candidate not in keep:
                keep.append(candidate)
        self._set_neighbors(node_id, layer, [i for _, _, i in sorted(keep)])

    # Search

    def search(self, query_vector, k: int = 5, ef_search: int = 90,
               radius: Optional[float] = 10.0) -> List[QueryResult]:
        query = self.check_vector(query_vector)
        if k <= 0 or not self._nodes:
            return []

        entry = [self.entry_point]
        for layer in range(self.max_level, 0, -1):
            entry = [self._search_layer(query, entry, 1, layer)[0][2]]
        # Every node is reachable from the entry point on layer 0
        if self.entry_point not in entry:
            entry.append(self.entry_point)

        found = self._search_layer(query, entry, max(ef_search, k), 0)

        results = []
        for distance, seq, record_id in found[:k]:
            if radius is not None and distance > radius:
                continue
            results.append(QueryResult(id=record_id, distance=distance, seq=seq))
        return results

    def _distances(self, query: np.ndarray, ids: List[str]) -> np.ndarray:
        if not ids:
            return np.empty(0, dtype=np.float32)
        matrix = np.stack([self._nodes[i].vector for i in ids])
        return self._distance(query, matrix)

    def _rank(self, query: np.ndarray, ids: Iterable[str]) -> List[Candidate]:
        ids = list(ids)
        distances = self._distances(query, ids)
        return sorted((float(d), self._nodes[i].seq, i) for d, i in zip(distances, ids))

    def _search_layer(self, query: np.ndarray, entry_ids: List[str], ef: int, layer: int) -> List[Candidate]:
        """Best-first search on one layer; returns up to ``ef`` candidates, closest first."""
        visited = set(entry_ids)
        candidates: List[Candidate] = []
        # Max-heap on (distance, seq): the worst kept result sits at the top
        nearest: List[Tuple[float, int, str]] = []

        for distance, seq, node_id in self._rank(query, entry_ids):
            heapq.heappush(candidates, (distance, seq, node_id))
            heapq.heappush(nearest, (-distance, -seq, node_id))
            if len(nearest) > ef:
                heapq.heappop(nearest)

        while candidates:
            distance, _, node_id = heapq.heappop(candidates)
            if len(nearest) >= ef and distance > -nearest[0][0]:
                break

            fresh = [i for i in self._nodes[node_id].neighbors[layer] if i not in visited]
            if not fresh:
                continue
            visited.update(fresh)

            for d, neighbor_id in zip(self._distances(query, fresh), fresh):
                d = float(d)
                if len(nearest) < ef or d < -nearest[0][0]:
                    seq = self._nodes[neighbor_id].seq
                    heapq.heappush(candidates, (d, seq, neighbor_id))
                    heapq.heappush(nearest, (-d, -seq, neighbor_id))
                    if len(nearest) > ef:
                        heapq.heappop(nearest)

        return sorted((-d, -s, i) for d, s, i in nearest)

    def _select_neighbors(self, base: np.ndarray, ranked: List[Candidate], limit: int,
                          keep: List[str] = None) -> List[str]:
        """Diversity heuristic: accept a candidate only if it is closer to
        ``base`` than to every neighbour accepted so far."""
        selected = list(keep or [])
        selected_vectors = [self._nodes[i].vector for i in selected]

        for distance, _, candidate_id in ranked:
            if len(selected) >= limit:
                break
            if candidate_id in selected:
                continue
            vector = self._nodes[candidate_id].vector
            if selected_vectors:
                to_selected = self._distance(vector, np.stack(selected_vectors))
                if np.any(to_selected < distance):
                    continue
            selected.append(candidate_id)
            selected_vectors.append(vector)

        return selected

    # Persistence support

    def export_node(self, record_id: str) -> Optional[Tuple[int, int, List[List[str]]]]:
        """(seq, level, neighbors) of a node, detached from the live graph."""
        node = self._nodes.get(record_id)
        if node is None:
            return None
        return node.seq, node.level, [list(layer) for layer in node.neighbors]

    def drain_changes(self) -> Tuple[Set[str], Set[str]]:
        """Return (changed node ids, removed ids) since the last drain."""
        dirty = {i for i in self._dirty if i in self._nodes}
        removed = set(self._removed)
        self._dirty.clear()
        self._removed.clear()
        return dirty, removed

    def restore(self, nodes: Iterable[IndexNode], entry_point: Optional[str], next_seq: int) -> None:
        """Replace the graph with previously persisted nodes.

        Raises ValidationError when the nodes do not form a consistent graph,
        in which case the caller should rebuild from the records.
        """
        self.clear()
        self._removed.clear()

        for node in nodes:
            node.vector = self.check_vector(node.vector)
            if len(node.neighbors) != node.level + 1:
                raise ValidationError(f"Node {node.id} has {len(node.neighbors)} layers, expected {node.level + 1}")
            self._nodes[node.id] = node
            self._inbound[node.id] = [set() for _ in range(node.level + 1)]

        for node in self._nodes.values():
            for layer, neighbors in enumerate(node.neighbors):
                for target in neighbors:
                    target_node = self._nodes.get(target)
                    if target_node is None or target_node.level < layer:
                        self.clear()
                        raise ValidationError(f"Node {node.id} has a dangling edge to {target} on layer {layer}")
                    self._inbound[target][layer].add(node.id)

        if self._nodes:
            if entry_point not in self._nodes:
                self.clear()
                raise ValidationError(f"Entry point {entry_point!r} is not a node of the graph")
            self.entry_point = entry_point
            self.max_level = self._nodes[entry_point].level
            seq_floor = max(n.seq for n in self._nodes.values()) + 1
            self.next_seq = max(next_seq, seq_floor)
        else:
            self.next_seq = next_seq

        self._dirty.clear()
        self._removed.clear()
