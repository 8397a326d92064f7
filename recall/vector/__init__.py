"""
Vector layer: HNSW index, distance metrics and embedding providers.
"""

from .index import IVectorIndex, HNSWIndex
from .types import IndexNode, QueryResult
from .distance import METRICS, get_metric
from .embeddings import (
    IEmbeddingProvider,
    CachedEmbedding,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    embed,
    embed_async
)

__all__ = [
    'IVectorIndex',
    'HNSWIndex',
    'IndexNode',
    'QueryResult',
    'METRICS',
    'get_metric',
    'IEmbeddingProvider',
    'CachedEmbedding',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'embed',
    'embed_async'
]
