"""
Tests for the ingestion pipeline: text normalization, id assignment, atomic
batches and the JSONL / CSV / TSV importers.
"""

import asyncio
import io
import json
import threading

import pytest
from pydantic import ValidationError as SchemaValidationError

from recall.core.errors import EmbeddingUnavailable, ValidationError
from recall.core.ingest import (
    IngestionPipeline,
    IngestItem,
    new_record_id,
    normalize_header,
    sanitize
)
from recall.core.search_service import search_text
from recall.core.store import RecordStore
from recall.vector.embeddings import DeterministicHashEmbedding, IEmbeddingProvider

DIM = 32


class TableEmbedding(IEmbeddingProvider):
    """Looks vectors up in a fixed table."""

    def __init__(self, table, dimension=2):
        self.table = table
        self.dimension = dimension

    def embed_text(self, text):
        return self.table[text]

    def get_dimension(self):
        return self.dimension


class FailingEmbedding(IEmbeddingProvider):
    """Fails on one particular text."""

    def __init__(self, bad_text, dimension=DIM):
        self.bad_text = bad_text
        self.inner = DeterministicHashEmbedding(dimension)

    def embed_text(self, text):
        if text == self.bad_text:
            raise RuntimeError("model crashed")
        return self.inner.embed_text(text)

    def get_dimension(self):
        return self.inner.dimension


@pytest.fixture
def store(tmp_path):
    return RecordStore(str(tmp_path / "vector.db"), dimension=DIM, m=8, ef_construction=40)


@pytest.fixture
def pipeline(store):
    return IngestionPipeline(store, DeterministicHashEmbedding(DIM))


def test_sanitize_replaces_special_characters():
    assert sanitize('Hello (world) "quoted"') == "Hello world quoted"
    assert sanitize("a_b=c") == "a b c"
    assert sanitize("  spaced   out  ") == "spaced out"
    assert sanitize("#$%^&*") == ""
    assert sanitize("plain text") == "plain text"


def test_new_record_id_format():
    ids = {new_record_id() for _ in range(100)}
    assert len(ids) == 100
    for record_id in ids:
        assert len(record_id) == 32
        int(record_id, 16)


def test_normalize_header():
    assert normalize_header("Source URL") == "source_url"
    assert normalize_header("Lang!") == "lang_"
    assert normalize_header("Ünïcode") == "ncode"


def test_ingest_item_validation():
    item = IngestItem.model_validate({"input": 1, "result": "two", "data": None})
    assert item.input == "1"
    assert item.data == {}

    with pytest.raises(SchemaValidationError):
        IngestItem.model_validate({"input": "  ", "result": "x"})


def test_add_generates_id(pipeline, store):
    record = pipeline.add("What is (HNSW)?", "A graph index", {"source": "docs"})
    assert len(record.id) == 32
    stored = store.get(record.id)
    assert stored.input == "What is HNSW ?"
    assert stored.result == "A graph index"
    assert stored.data == {"source": "docs"}


def test_add_with_explicit_id_replaces(pipeline, store):
    pipeline.add("first", "one", {"id": "fixed"})
    pipeline.add("second", "two", {"id": "fixed"})
    assert store.count() == 1
    assert store.get("fixed").input == "second"


def test_add_with_empty_text_is_noop(pipeline, store):
    assert pipeline.add("", "result") is None
    assert pipeline.add("input", "   ") is None
    assert pipeline.add("###", "result") is None
    assert store.count() == 0


def test_similarity_ranking_scenario(tmp_path):
    """cat/dog/car in 2-D: a kitten query lands on the animals before the vehicle."""
    table = {
        "cat": [1.0, 0.0],
        "dog": [0.9, 0.1],
        "car": [0.0, 1.0],
        "kitten": [0.95, 0.05],
    }
    store = RecordStore(str(tmp_path / "animals.db"), dimension=2, m=4)
    embedder = TableEmbedding(table)
    pipeline = IngestionPipeline(store, embedder)

    pipeline.add("cat", "Animal", {"id": "1"})
    pipeline.add("dog", "Animal", {"id": "2"})
    pipeline.add("car", "Vehicle", {"id": "3"})

    hits = search_text(store, embedder, "kitten", k=2)
    assert [hit.id for hit in hits] == ["1", "2"]
    assert [hit.result for hit in hits] == ["Animal", "Animal"]

    hits = search_text(store, embedder, "kitten", k=3)
    assert [hit.result for hit in hits] == ["Animal", "Animal", "Vehicle"]
    assert hits[2].input == "car"


def test_batch_then_remove_middle(pipeline, store):
    items = [{"input": f"question {i}", "result": f"answer {i}", "data": {"id": f"q{i}"}} for i in range(40)]
    records = pipeline.add_batch(items)
    assert len(records) == 40
    assert store.count() == 40

    assert pipeline.remove("q20") is True
    assert store.count() == 39

    embedder = DeterministicHashEmbedding(DIM)
    for i in range(40):
        hits = search_text(store, embedder, f"question {i}", k=10)
        assert "q20" not in [hit.id for hit in hits]
        if i != 20:
            assert hits[0].id == f"q{i}"


def test_add_batch_skips_invalid_items(pipeline, store):
    records = pipeline.add_batch([
        {"input": "good", "result": "one"},
        {"input": "", "result": "empty input"},
        {"result": "no input"},
        {"input": "also good", "result": "two"},
    ])
    assert [r.result for r in records] == ["one", "two"]
    assert store.count() == 2


def test_embedding_failure_aborts_batch(store):
    pipeline = IngestionPipeline(store, FailingEmbedding("bad"))
    with pytest.raises(EmbeddingUnavailable):
        pipeline.add_batch([
            {"input": "fine", "result": "a"},
            {"input": "bad", "result": "b"},
        ])
    assert store.count() == 0

    with pytest.raises(EmbeddingUnavailable):
        pipeline.add("bad", "b")
    assert store.count() == 0


def test_async_add(pipeline, store):
    record = asyncio.run(pipeline.aadd("async input", "async result", {"id": "a1"}))
    assert record.id == "a1"
    assert store.get("a1").result == "async result"

    records = asyncio.run(pipeline.aadd_batch([
        {"input": "x", "result": "y"},
        {"input": "z", "result": "w"},
    ]))
    assert len(records) == 2
    assert store.count() == 3


def test_cancelled_add_leaves_store_untouched(store):
    """Cancelling while the embedder is busy writes nothing."""
    started = threading.Event()
    release = threading.Event()

    class SlowEmbedding(DeterministicHashEmbedding):
        def embed_text(self, text):
            started.set()
            release.wait(timeout=10)
            return super().embed_text(text)

    pipeline = IngestionPipeline(store, SlowEmbedding(DIM))

    async def run_and_cancel():
        task = asyncio.create_task(pipeline.aadd("slow", "result", {"id": "slow"}))
        await asyncio.to_thread(started.wait, 10)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

    asyncio.run(run_and_cancel())

    assert store.count() == 0
    assert store.get("slow") is None


def test_import_jsonl_batches_and_skips(pipeline, store):
    lines = [json.dumps({"input": f"in {i}", "result": f"out {i}", "data": {"n": i}}) for i in range(85)]
    lines.insert(10, "{not json")
    lines.insert(20, json.dumps({"input": "missing result"}))
    lines.insert(30, "")

    progress_calls = []
    report = pipeline.import_jsonl(io.StringIO("\n".join(lines)), batch_size=40,
                                   progress=lambda *args: progress_calls.append(args))

    assert report.added == 85
    assert report.skipped == 2
    assert report.batches == 3
    assert len(report.errors) == 2
    assert store.count() == 85
    assert [call[0] for call in progress_calls] == [1, 2, 3]
    assert [call[2] for call in progress_calls] == [40, 40, 5]


def test_import_jsonl_from_path_with_duplicate_ids(pipeline, store, tmp_path):
    path = tmp_path / "records.jsonl"
    path.write_text("\n".join([
        json.dumps({"input": "a", "result": "first", "data": {"id": "dup"}}),
        json.dumps({"input": "b", "result": "second", "data": {"id": "dup"}}),
        json.dumps({"input": "c", "result": "third"}),
    ]), encoding="utf-8")

    report = pipeline.import_jsonl(path)
    assert report.added == 2
    assert report.skipped == 1
    assert store.get("dup").result == "first"


def test_import_csv_with_data_columns(pipeline, store, tmp_path):
    path = tmp_path / "facts.csv"
    path.write_text(
        "question,answer,Source URL,lang\n"
        "What is a vector?,A list of numbers,http://example.com/v,en\n"
        ",orphan answer,,\n"
        "Short row,Only two cells\n",
        encoding="utf-8",
    )

    report = pipeline.import_delimited(path, batch_size=40)
    assert report.added == 2
    assert report.skipped == 1
    assert store.count() == 2

    embedder = DeterministicHashEmbedding(DIM)
    hit = search_text(store, embedder, "What is a vector?", k=1)[0]
    assert hit.result == "A list of numbers"
    assert hit.data == {"source_url": "http://example.com/v", "lang": "en"}


def test_import_tsv_with_custom_headers(pipeline, store, tmp_path):
    path = tmp_path / "phrases.tsv"
    path.write_text(
        "id\tanswer\tprompt\n"
        "p1\tBonjour\tHello\n"
        "p2\tAu revoir\tGoodbye\n",
        encoding="utf-8",
    )

    progress_calls = []
    report = pipeline.import_delimited(path, input_header="prompt", result_header="answer",
                                       progress=lambda *args: progress_calls.append(args))
    assert report.added == 2
    assert progress_calls == [(1, 1, 2)]

    # The id column doubles as the record id
    assert store.get("p1").input == "Hello"
    assert store.get("p2").result == "Au revoir"


def test_import_rejects_unknown_extension(pipeline, tmp_path):
    path = tmp_path / "data.txt"
    path.write_text("a,b\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        pipeline.import_delimited(path)


def test_import_rejects_unknown_header(pipeline, tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("a,b\nx,y\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        pipeline.import_delimited(path, input_header="missing")


def test_import_rejects_input_and_result_on_same_column(pipeline, store, tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("answer,question\nyes,is it?\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        pipeline.import_delimited(path, input_header="question")
    with pytest.raises(ValidationError):
        pipeline.import_delimited(path, result_header="answer")
    assert store.count() == 0

    report = pipeline.import_delimited(path, input_header="question", result_header="answer")
    assert report.added == 1
