"""
Tests for the query engine: result clamping, radius handling and tool text.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from recall.core import config
from recall.core.errors import EmbeddingUnavailable
from recall.core.ingest import IngestionPipeline
from recall.core.schema import SearchHit
from recall.core.search_service import (
    NOT_FOUND_TEXT,
    asearch_text,
    clamp_results,
    format_tool_text,
    search_text
)
from recall.core.store import RecordStore
from recall.vector.embeddings import DeterministicHashEmbedding

DIM = 16


@pytest.fixture
def embedder():
    return DeterministicHashEmbedding(DIM)


@pytest.fixture
def store(tmp_path, embedder):
    store = RecordStore(str(tmp_path / "vector.db"), dimension=DIM, m=8)
    IngestionPipeline(store, embedder).add_batch(
        [{"input": f"phrase {i}", "result": f"meaning {i}", "data": {"id": f"p{i}"}} for i in range(60)]
    )
    return store


def test_clamp_results():
    assert clamp_results(5) == 5
    assert clamp_results(0) == 1
    assert clamp_results(-3) == 1
    assert clamp_results(500) == config.MAX_RESULTS
    assert clamp_results("7") == 7
    assert clamp_results(None) == config.DEFAULT_RESULTS
    assert clamp_results("lots") == config.DEFAULT_RESULTS


def test_search_returns_closest_first(store, embedder):
    hits = search_text(store, embedder, "phrase 12", k=3)
    assert len(hits) == 3
    assert hits[0].id == "p12"
    assert hits[0].distance == 0.0
    assert hits[0].result == "meaning 12"
    assert [h.distance for h in hits] == sorted(h.distance for h in hits)


def test_search_caps_results(store, embedder):
    # Unit vectors are at most 4 apart, well inside the default radius
    hits = search_text(store, embedder, "anything", k=1000)
    assert len(hits) == config.MAX_RESULTS


def test_search_default_limit(store, embedder):
    assert len(search_text(store, embedder, "anything")) == config.DEFAULT_RESULTS


def test_empty_query_returns_nothing(store):
    embedder = MagicMock()
    assert search_text(store, embedder, "") == []
    assert search_text(store, embedder, "   ") == []
    embedder.embed_text.assert_not_called()


def test_search_on_empty_store(tmp_path, embedder):
    store = RecordStore(str(tmp_path / "empty.db"), dimension=DIM)
    assert search_text(store, embedder, "hello") == []


def test_search_respects_radius(tmp_path):
    embedder = MagicMock()
    embedder.embed_text.return_value = [0.0, 0.0]
    store = RecordStore(str(tmp_path / "radius.db"), dimension=2, m=4)
    store.put("near", [1.0, 1.0], "near", "near")
    store.put("far", [30.0, 0.0], "far", "far")

    hits = search_text(store, embedder, "origin", k=5)
    assert [h.id for h in hits] == ["near"]
    assert hits[0].distance == pytest.approx(2.0)


def test_embedding_failure_propagates(store):
    embedder = MagicMock()
    embedder.embed_text.side_effect = ConnectionError("model server down")
    with pytest.raises(EmbeddingUnavailable):
        search_text(store, embedder, "hello")


def test_async_search(store, embedder):
    hits = asyncio.run(asearch_text(store, embedder, "phrase 3", k=2))
    assert hits[0].id == "p3"
    assert len(hits) == 2


def test_format_tool_text():
    hits = [
        SearchHit(distance=0.1, id="a", result="first answer"),
        SearchHit(distance=0.2, id="b", result="second answer"),
    ]
    blocks = format_tool_text(hits, 0.1234)
    assert blocks == [
        "Recall search found the following results in 0.12s:",
        "first answer",
        "second answer",
    ]


def test_format_tool_text_without_hits():
    assert format_tool_text([], 0.5) == [NOT_FOUND_TEXT]
