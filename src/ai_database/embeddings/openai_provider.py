"""OpenAI embeddings for semantic matching of entities."""

import os
from typing import Any

from loguru import logger

from ai_database.embeddings.provider import BatchedEmbeddingProvider
from ai_database.errors import DependencyMissingError


class OpenAIEmbeddingProvider(BatchedEmbeddingProvider):
    """Embeddings from the OpenAI API; one request per batch."""

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        *,
        batch_size: int = 64,
        dimensions: int = 1536,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(model_name, batch_size=batch_size, dimensions=dimensions)
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout

    async def _load(self) -> Any:
        from openai import AsyncOpenAI

        api_key = self._api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise DependencyMissingError("OpenAI embeddings require OPENAI_API_KEY.")

        logger.debug(f"Creating OpenAI embeddings client for model {self.model_name}")
        return AsyncOpenAI(api_key=api_key, base_url=self._base_url, timeout=self._timeout)

    async def _embed_batch(self, backend: Any, batch: list[str]) -> list[list[float]]:
        response = await backend.embeddings.create(model=self.model_name, input=batch)
        # The API may return items out of order; each carries its input position
        by_index = {int(item.index): [float(v) for v in item.embedding] for item in response.data}
        missing = [i for i in range(len(batch)) if i not in by_index]
        if missing:
            raise RuntimeError(f"OpenAI embedding response is missing vectors for {missing}.")
        return [by_index[i] for i in range(len(batch))]
