"""
Vector index node and query result types.
"""

from dataclasses import dataclass, field
from typing import List

import numpy as np


@dataclass
class IndexNode:
    """A single node of the proximity graph."""

    id: str
    """Record id this node belongs to"""

    seq: int
    """Insertion sequence number, used to break distance ties"""

    level: int
    """Highest layer the node is present on"""

    vector: np.ndarray
    """The float32 vector the node was inserted with"""

    neighbors: List[List[str]] = field(default_factory=list)
    """Outgoing edges, one list per layer 0..level"""


@dataclass
class QueryResult:
    """Represents a search result from the vector index."""

    id: str
    """Identifier for the matching record"""

    distance: float
    """Distance from the query under the index metric"""

    seq: int = 0
    """Insertion sequence of the match"""
