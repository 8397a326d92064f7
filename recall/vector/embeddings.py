"""
Embedding providers turning input text into fixed-length float vectors.
"""

import asyncio
import hashlib
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from ..core.errors import EmbeddingUnavailable
from ..util.logging import logger


class IEmbeddingProvider(ABC):
    """Turns text into a fixed-length vector. Failures surface as EmbeddingUnavailable."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Embed one text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Length of every vector this provider returns."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Offline embedding derived from a hash of the text.

    The SHA-256 digest of the text seeds a random generator that draws a
    unit-length Gaussian vector, so equal texts always map to equal vectors
    and no model download is needed. Similar texts are NOT close to each
    other; use it for plumbing and tests, not for semantic recall.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
        vector = rng.standard_normal(self.dimension).astype(np.float32)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Embeddings from a pre-trained sentence-transformers model.

    Defaults to the multilingual paraphrase MiniLM model (384 dimensions).
    The model is loaded on first use.
    """

    def __init__(self, model_name: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise EmbeddingUnavailable(f"Failed to load embedding model {self.model_name}: {e}") from e
        return self._model

    def embed_text(self, text: str) -> list[float]:
        model = self.model
        try:
            embedding = model.encode(text, convert_to_tensor=False)
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding failed for model {self.model_name}: {e}") from e
        return np.asarray(embedding, dtype=np.float32).tolist()

    def get_dimension(self) -> int:
        """Measured once by embedding a short text."""
        if self._dimension is None:
            self._dimension = len(self.embed_text("test"))
        return self._dimension


class CachedEmbedding(IEmbeddingProvider):
    """Wraps another provider with an on-disk cache of computed vectors.

    Entries are keyed by the SHA-256 of the provider name and the text, and
    appended one JSON object per line to ``cache_path``, so repeated texts
    and re-imports are not embedded twice. The file is read on first use.
    """

    def __init__(self, provider: IEmbeddingProvider, cache_path: Union[str, Path]):
        self.provider = provider
        self.cache_path = Path(cache_path)
        self.name = getattr(provider, "model_name", provider.__class__.__name__)
        self.hits = 0
        self.misses = 0
        self._entries: Optional[Dict[str, list[float]]] = None
        self._lock = threading.Lock()

    def _key(self, text: str) -> str:
        return hashlib.sha256(f"{self.name}\n{text}".encode("utf-8")).hexdigest()

    def _load(self) -> Dict[str, list[float]]:
        entries = {}
        if not self.cache_path.exists():
            return entries
        with open(self.cache_path, "r", encoding="utf-8") as stream:
            for line_number, line in enumerate(stream, start=1):
                try:
                    entry = json.loads(line)
                    entries[entry["key"]] = entry["vector"]
                except (ValueError, KeyError, TypeError):
                    # A write cut short by a crash leaves a partial last line
                    logger.warning(f"Skipping unreadable line {line_number} of {self.cache_path}")
        logger.info(f"Loaded {len(entries)} cached embeddings from {self.cache_path}")
        return entries

    def _append(self, key: str, vector: list[float]) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_path, "a", encoding="utf-8") as stream:
                stream.write(json.dumps({"key": key, "vector": vector}) + "\n")
        except OSError as e:
            logger.warning(f"Could not write embedding cache {self.cache_path}: {e}")

    def embed_text(self, text: str) -> list[float]:
        key = self._key(text)
        with self._lock:
            if self._entries is None:
                self._entries = self._load()
            cached = self._entries.get(key)
            if cached is not None:
                self.hits += 1
        if cached is not None:
            return list(cached)

        vector = [float(x) for x in self.provider.embed_text(text)]
        with self._lock:
            if key not in self._entries:
                self._entries[key] = vector
                self._append(key, vector)
            self.misses += 1
        return list(vector)

    def get_dimension(self) -> int:
        return self.provider.get_dimension()


def embed(provider: IEmbeddingProvider, text: str) -> list[float]:
    """Embed ``text``, turning any provider failure into EmbeddingUnavailable."""
    try:
        return provider.embed_text(text)
    except EmbeddingUnavailable:
        raise
    except Exception as e:
        raise EmbeddingUnavailable(f"{provider.__class__.__name__} failed: {e}") from e


async def embed_async(provider: IEmbeddingProvider, text: str) -> list[float]:
    """Embed in a worker thread so callers can await (and cancel) the call."""
    return await asyncio.to_thread(embed, provider, text)
