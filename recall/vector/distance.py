"""
Distance metrics for the vector index. Smaller is always closer.
"""

from typing import Callable, Dict

import numpy as np

from ..core.errors import ValidationError


def squared_l2(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Squared Euclidean distance from ``query`` to every row of ``matrix``."""
    diff = matrix - query
    return np.einsum("ij,ij->i", diff, diff)


def cosine(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """``1 - cos(query, row)``; rows or queries with zero norm are at distance 1."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return 1.0 - sims


def inner_product(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """``1 - query . row``."""
    return 1.0 - matrix @ query


METRICS: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "l2": squared_l2,
    "cosine": cosine,
    "ip": inner_product,
}


def get_metric(name: str) -> Callable[[np.ndarray, np.ndarray], np.ndarray]:
    """Resolve a metric by name, rejecting anything unknown."""
    try:
        return METRICS[name.lower()]
    except (KeyError, AttributeError):
        raise ValidationError(f"Unknown distance metric {name!r}; expected one of {sorted(METRICS)}")
