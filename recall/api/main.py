"""
HTTP tool surface: record CRUD and the "search" tool over one record store.
"""

import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .schemas import (
    RecordRequest,
    BatchRequest,
    RecordResponse,
    BatchResponse,
    DeleteResponse,
    SearchResult,
    SearchResponse,
    ToolSearchRequest,
    ToolContent,
    ToolSearchResponse,
    HealthResponse,
    NukeResponse
)
from ..core.config import VERSION, DEFAULT_RESULTS, debug_enabled, open_store, get_embedding_provider
from ..core.errors import (
    BatchAtomicityViolation,
    EmbeddingUnavailable,
    StorageIOError,
    ValidationError
)
from ..core.ingest import IngestionPipeline
from ..core.search_service import search_text, clamp_results, format_tool_text
from ..core.store import RecordStore
from ..util.logging import logger


def create_app(store: RecordStore = None, embedder=None) -> FastAPI:
    """Build the application. Store and embedder default to the configured ones, opened on first use."""
    app = FastAPI(
        title="Recall API",
        version=VERSION,
        description="Semantic recall over a local vector record store",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None
    )
    app.state.store = store
    app.state.embedder = embedder

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(EmbeddingUnavailable)
    async def embedding_error_handler(request: Request, exc: EmbeddingUnavailable):
        logger.error(f"Embedding provider unavailable: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(StorageIOError)
    async def storage_error_handler(request: Request, exc: StorageIOError):
        logger.error(f"Storage failure: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(BatchAtomicityViolation)
    async def atomicity_error_handler(request: Request, exc: BatchAtomicityViolation):
        logger.error(f"Batch atomicity violation: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    def get_store(request: Request) -> RecordStore:
        if request.app.state.store is None:
            request.app.state.store = open_store()
        return request.app.state.store

    def get_embedder(request: Request, store: RecordStore = Depends(get_store)):
        if request.app.state.embedder is None:
            request.app.state.embedder = get_embedding_provider(db_path=store.db_path)
        return request.app.state.embedder

    def get_pipeline(store: RecordStore = Depends(get_store), embedder=Depends(get_embedder)) -> IngestionPipeline:
        return IngestionPipeline(store, embedder)

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint(store: RecordStore = Depends(get_store)):
        """Check store and index health."""
        summary = store.health()
        return HealthResponse(
            status="healthy" if summary["db_health"] else "unhealthy",
            version=VERSION,
            db_health=summary["db_health"],
            records=summary["records"],
            nodes=summary["nodes"],
            max_level=summary["max_level"]
        )

    @app.post("/records", response_model=RecordResponse)
    def add_record_endpoint(req: RecordRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
        """Add (or replace, when data.id is set) a single record."""
        record = pipeline.add(req.input, req.result, req.data)
        if record is None:
            raise HTTPException(status_code=400, detail="input and result must contain text")
        return RecordResponse(id=record.id, input=record.input, result=record.result, data=record.data)

    @app.post("/records/batch", response_model=BatchResponse)
    def add_batch_endpoint(req: BatchRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
        """Add records in one atomic batch."""
        records = pipeline.add_batch([r.model_dump() for r in req.records])
        return BatchResponse(added=len(records), ids=[r.id for r in records])

    @app.get("/records/{record_id}", response_model=RecordResponse)
    def get_record_endpoint(record_id: str, store: RecordStore = Depends(get_store)):
        record = store.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return RecordResponse(id=record.id, input=record.input, result=record.result, data=record.data)

    @app.delete("/records/{record_id}", response_model=DeleteResponse)
    def delete_record_endpoint(record_id: str, store: RecordStore = Depends(get_store)):
        if not store.delete(record_id):
            raise HTTPException(status_code=404, detail="Record not found")
        return DeleteResponse(success=True, id=record_id)

    @app.get("/search", response_model=SearchResponse)
    def search_endpoint(q: str = "", limit: int = DEFAULT_RESULTS, store: RecordStore = Depends(get_store),
                        embedder=Depends(get_embedder)):
        """Search stored records by semantic similarity."""
        started = time.perf_counter()
        hits = search_text(store, embedder, q, clamp_results(limit))
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        return SearchResponse(
            query=q,
            results=[SearchResult(**hit.to_dict()) for hit in hits],
            elapsed_ms=elapsed_ms
        )

    @app.post("/tools/search", response_model=ToolSearchResponse)
    def tool_search_endpoint(req: ToolSearchRequest, store: RecordStore = Depends(get_store),
                             embedder=Depends(get_embedder)):
        """The search tool: results rendered as text content blocks."""
        started = time.perf_counter()
        hits = search_text(store, embedder, req.text, clamp_results(req.numberOfResults or DEFAULT_RESULTS))
        blocks = format_tool_text(hits, time.perf_counter() - started)
        return ToolSearchResponse(content=[ToolContent(text=block) for block in blocks])

    @app.delete("/store", response_model=NukeResponse)
    def nuke_endpoint(store: RecordStore = Depends(get_store)):
        """Destroy every record and the index."""
        removed = store.nuke()
        return NukeResponse(success=removed, db_path=store.db_path)

    return app


app = create_app()
