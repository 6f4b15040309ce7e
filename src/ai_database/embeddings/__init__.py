"""Embedding backends for semantic search."""

from ai_database.embeddings.factory import create_embedding_provider
from ai_database.embeddings.fastembed_provider import FastEmbedEmbeddingProvider
from ai_database.embeddings.openai_provider import OpenAIEmbeddingProvider
from ai_database.embeddings.provider import BatchedEmbeddingProvider, EmbeddingProvider

__all__ = [
    "BatchedEmbeddingProvider",
    "EmbeddingProvider",
    "FastEmbedEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "create_embedding_provider",
]
