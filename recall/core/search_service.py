"""
Query engine: embeds query text and returns the closest stored records.
"""

import asyncio
from typing import List

from ..vector.embeddings import IEmbeddingProvider, embed, embed_async
from .config import DEFAULT_RESULTS, MAX_RESULTS, SEARCH_EF, SEARCH_RADIUS
from .schema import SearchHit
from .store import RecordStore

NOT_FOUND_TEXT = "Sorry. Recall search didn't find anything."


def clamp_results(k) -> int:
    """Bound the requested result count to [1, MAX_RESULTS]."""
    try:
        k = int(k)
    except (TypeError, ValueError):
        return DEFAULT_RESULTS
    return max(1, min(k, MAX_RESULTS))


def search_text(store: RecordStore, embedder: IEmbeddingProvider, query: str,
                k: int = DEFAULT_RESULTS) -> List[SearchHit]:
    """
    Perform semantic search over the store.

    Args:
        store: Record store to search
        embedder: Provider used to embed the query
        query: The search query string
        k: Maximum number of results, clamped to MAX_RESULTS

    Returns:
        Hits ordered by ascending distance, at most ``k`` of them
    """
    if not query or not query.strip():
        return []

    query_embedding = embed(embedder, query)
    return store.search_records(query_embedding, k=clamp_results(k), ef_search=SEARCH_EF, radius=SEARCH_RADIUS)


async def asearch_text(store: RecordStore, embedder: IEmbeddingProvider, query: str,
                       k: int = DEFAULT_RESULTS) -> List[SearchHit]:
    """Awaitable ``search_text``; the embed runs in a worker thread."""
    if not query or not query.strip():
        return []

    query_embedding = await embed_async(embedder, query)
    return await asyncio.to_thread(
        store.search_records, query_embedding, clamp_results(k), SEARCH_EF, SEARCH_RADIUS)


def format_tool_text(hits: List[SearchHit], elapsed_seconds: float) -> List[str]:
    """Text blocks returned by the search tool: a header, then one block per result."""
    if not hits:
        return [NOT_FOUND_TEXT]
    blocks = [f"Recall search found the following results in {elapsed_seconds:.2f}s:"]
    blocks.extend(hit.result for hit in hits)
    return blocks
