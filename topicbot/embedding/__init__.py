"""Embedding provider boundary."""

from .provider import (
    EmbeddingProvider,
    SentenceTransformerProvider,
    embed_missing,
    news_embedding_text,
)

__all__ = [
    "EmbeddingProvider",
    "SentenceTransformerProvider",
    "embed_missing",
    "news_embedding_text",
]
