"""Text embedding for news items using sentence-transformers."""

import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from topicbot.core.entities import NewsItemRecord
from topicbot.core.errors import EmbeddingUnavailable, SkippedInput
from topicbot.core.logging import get_logger
from topicbot.core.settings import Settings, get_settings
from topicbot.core.utils import clean_text

logger = get_logger(__name__)

MAX_EMBEDDING_CHARS = 8000

# Lazy import to avoid loading torch at module import time
_SentenceTransformer = None


def _get_sentence_transformer_class():
    """Lazy import of SentenceTransformer."""
    global _SentenceTransformer
    if _SentenceTransformer is None:
        from sentence_transformers import SentenceTransformer
        _SentenceTransformer = SentenceTransformer
    return _SentenceTransformer


def news_embedding_text(item: NewsItemRecord) -> str:
    """"{title}. {body}" cut to the embedding input limit; empty if nothing to embed."""
    title = clean_text(item.title)
    body = clean_text(item.body)
    text = f"{title}. {body}" if title and body else (title or body)
    return text[:MAX_EMBEDDING_CHARS]


class EmbeddingProvider(ABC):
    """Turns text into a fixed-length vector."""

    dimension: int

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Raises:
            EmbeddingUnavailable: the provider cannot produce a vector
        """

    def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "dimension": self.dimension}


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5", dimension: int = 384):
        self.model_name = model_name
        self.dimension = dimension
        self._model = None
        self._load_lock = threading.Lock()
        self.last_error: Optional[str] = None
        self.embedded_count = 0

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "SentenceTransformerProvider":
        settings = settings or get_settings()
        return cls(model_name=settings.embedding_model, dimension=settings.embedding_dimension)

    def _load_model(self):
        with self._load_lock:
            if self._model is None:
                try:
                    SentenceTransformer = _get_sentence_transformer_class()
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name)
                except Exception as e:
                    # Import errors, download failures and bad model names all mean the same here
                    self.last_error = f"{type(e).__name__}: {e}"
                    raise EmbeddingUnavailable(
                        f"Embedding model {self.model_name} could not be loaded: {e}"
                    ) from e
        return self._model

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text")

        model = self._load_model()
        try:
            vector = model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            raise EmbeddingUnavailable(f"Embedding failed: {e}") from e

        vector = np.asarray(vector, dtype=np.float64)
        if vector.shape != (self.dimension,):
            self.last_error = f"model returned shape {vector.shape}, expected ({self.dimension},)"
            raise EmbeddingUnavailable(self.last_error)

        self.embedded_count += 1
        return vector.tolist()

    def health_check(self) -> Dict[str, Any]:
        """Model status for diagnostics; does not load the model."""
        if self._model is not None:
            status = "healthy"
        elif self.last_error:
            status = "unavailable"
        else:
            status = "not_loaded"
        return {
            "status": status,
            "model": self.model_name,
            "dimension": self.dimension,
            "embedded": self.embedded_count,
            "last_error": self.last_error,
        }


async def embed_missing(items: Iterable[NewsItemRecord], provider: EmbeddingProvider,
                        workers: int = 4) -> Tuple[Dict[int, List[float]], List[SkippedInput]]:
    """
    Embed every item that has no embedding yet, at most ``workers`` at a time.

    Failed items are reported and left without an embedding; they are not
    retried within the same run.

    Returns:
        Tuple of (vectors by item id, failures)
    """
    pending = [item for item in items if item.embedding is None]
    if not pending:
        return {}, []

    semaphore = asyncio.Semaphore(max(1, workers))
    embedded: Dict[int, List[float]] = {}
    failures: List[SkippedInput] = []

    async def embed_one(item: NewsItemRecord):
        text = news_embedding_text(item)
        if not text:
            failures.append(SkippedInput(item.id, "no text to embed"))
            return
        async with semaphore:
            try:
                embedded[item.id] = await asyncio.to_thread(provider.embed, text)
            except EmbeddingUnavailable as e:
                logger.warning(f"Embedding failed for item {item.id}: {e}")
                failures.append(SkippedInput(item.id, f"embedding unavailable: {e}"))

    await asyncio.gather(*(embed_one(item) for item in pending))
    logger.info(f"Embedded {len(embedded)} of {len(pending)} items ({len(failures)} failed)")
    return embedded, failures
