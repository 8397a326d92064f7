"""
Configuration for the recall store, index, embeddings and query engine.
Values come from the environment (a local .env file is loaded first).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/vector.db")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Vector index configuration
VECTOR_SIZE = int(os.getenv("VECTOR_SIZE", "384"))
VECTOR_METRIC = os.getenv("VECTOR_METRIC", "l2")  # l2|cosine|ip
HNSW_M = int(os.getenv("HNSW_M", "50"))
HNSW_EF_CONSTRUCTION = int(os.getenv("HNSW_EF_CONSTRUCTION", "50"))
HNSW_SEED = int(os.getenv("HNSW_SEED", "42"))

# Query engine configuration
SEARCH_EF = int(os.getenv("SEARCH_EF", "90"))
SEARCH_RADIUS = float(os.getenv("SEARCH_RADIUS", "10.0"))
DEFAULT_RESULTS = int(os.getenv("DEFAULT_RESULTS", "5"))
MAX_RESULTS = int(os.getenv("MAX_RESULTS", "50"))

# Ingestion configuration
IMPORT_BATCH_SIZE = int(os.getenv("IMPORT_BATCH_SIZE", "40"))

# Embedding configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "sentence-transformers")  # sentence-transformers|hash
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2")
EMBED_CACHE = os.getenv("EMBED_CACHE", "true").lower() == "true"

# HTTP tool surface
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def embedding_cache_path(db_path: str = None) -> Path:
    """Embedding cache file kept in a ``cache`` directory beside the database."""
    return Path(db_path or DB_PATH).parent / "cache" / ".embeddings.cache.jsonl"


def get_embedding_provider(provider: str = None, db_path: str = None, cache: bool = None):
    """Get configured embedding provider implementation.

    Model-backed providers are wrapped in an on-disk cache next to ``db_path``
    unless ``cache`` (default EMBED_CACHE) is off.
    """
    provider = provider or EMBED_PROVIDER
    cache = EMBED_CACHE if cache is None else cache

    if provider == "hash":
        from recall.vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension=VECTOR_SIZE)
    elif provider in ("sentence-transformers", "st"):
        from recall.vector.embeddings import CachedEmbedding, SentenceTransformerEmbedding
        model = SentenceTransformerEmbedding(EMBED_MODEL_NAME)
        return CachedEmbedding(model, embedding_cache_path(db_path)) if cache else model
    else:
        from recall.core.errors import ValidationError
        raise ValidationError(f"Unknown EMBED_PROVIDER: {provider}")


def open_store(db_path: str = None):
    """Open the record store at ``db_path`` with the configured index parameters."""
    from recall.core.store import RecordStore
    return RecordStore(
        db_path or DB_PATH,
        dimension=VECTOR_SIZE,
        metric=VECTOR_METRIC,
        m=HNSW_M,
        ef_construction=HNSW_EF_CONSTRUCTION,
        seed=HNSW_SEED,
    )


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if VECTOR_SIZE < 1:
        issues.append("VECTOR_SIZE must be >= 1")

    if VECTOR_METRIC not in ["l2", "cosine", "ip"]:
        issues.append(f"Invalid VECTOR_METRIC: {VECTOR_METRIC}")

    if HNSW_M < 2:
        issues.append("HNSW_M must be >= 2")

    if HNSW_EF_CONSTRUCTION < 1 or SEARCH_EF < 1:
        issues.append("HNSW_EF_CONSTRUCTION and SEARCH_EF must be >= 1")

    if MAX_RESULTS < 1:
        issues.append("MAX_RESULTS must be >= 1")

    if IMPORT_BATCH_SIZE < 1:
        issues.append("IMPORT_BATCH_SIZE must be >= 1")

    if EMBED_PROVIDER not in ["sentence-transformers", "st", "hash"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    return issues
