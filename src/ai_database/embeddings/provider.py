"""Embedding provider protocol used by semantic search."""

import asyncio
from typing import Any, Protocol


class EmbeddingProvider(Protocol):
    """Contract for embedding backends that feed semantic search."""

    model_name: str
    dimensions: int

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query or entity text."""
        ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of entity texts."""
        ...


class BatchedEmbeddingProvider:
    """Base for model-backed providers.

    The backend (an API client or a local model) is loaded once on first use.
    Texts are sent in slices of batch_size, and every result is checked
    against the configured vector width. Subclasses implement _load() and
    _embed_batch().
    """

    def __init__(self, model_name: str, *, batch_size: int, dimensions: int) -> None:
        self.model_name = model_name
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._backend: Any | None = None
        self._backend_lock = asyncio.Lock()

    async def _load(self) -> Any:
        raise NotImplementedError

    async def _embed_batch(self, backend: Any, batch: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def _get_backend(self) -> Any:
        if self._backend is not None:
            return self._backend

        async with self._backend_lock:
            if self._backend is None:
                self._backend = await self._load()
            return self._backend

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        backend = await self._get_backend()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(await self._embed_batch(backend, texts[start : start + self.batch_size]))

        if vectors and len(vectors[0]) != self.dimensions:
            raise RuntimeError(
                f"Embedding model {self.model_name} returned {len(vectors[0])}-dimensional vectors "
                f"but was configured for {self.dimensions} dimensions."
            )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        return vectors[0] if vectors else [0.0] * self.dimensions
