"""
MCP server exposing the search tool over stdio, for agents that speak the
Model Context Protocol.
"""

import time
from typing import List

from mcp.server.fastmcp import FastMCP

from ..core.config import DEFAULT_RESULTS
from ..core.search_service import asearch_text, clamp_results, format_tool_text
from ..core.store import RecordStore
from ..util.logging import logger
from ..vector.embeddings import IEmbeddingProvider


def create_mcp_server(store: RecordStore, embedder: IEmbeddingProvider) -> FastMCP:
    """Build the MCP server; ``run()`` on the result serves it over stdio."""
    mcp = FastMCP("Recall", instructions="Recall provides semantic search on the local vector database.")

    @mcp.tool(name="search", description="Semantic search over stored records; returns the closest results as text.")
    async def _search(text: str, numberOfResults: int = DEFAULT_RESULTS) -> List[str]:
        started = time.perf_counter()
        hits = await asearch_text(store, embedder, text, clamp_results(numberOfResults))
        logger.log_operation("mcp.search", "success", {"results": len(hits)})
        return format_tool_text(hits, time.perf_counter() - started)

    return mcp
