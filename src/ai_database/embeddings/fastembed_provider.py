"""Local FastEmbed embeddings (ONNX, no network calls after model download)."""

import asyncio
from typing import Any

from loguru import logger

from ai_database.embeddings.provider import BatchedEmbeddingProvider
from ai_database.errors import DependencyMissingError

MODEL_ALIASES = {
    "bge-small-en-v1.5": "BAAI/bge-small-en-v1.5",
}


def _load_text_embedding(model_name: str) -> Any:
    try:
        from fastembed import TextEmbedding  # type: ignore[import-not-found]
    except ImportError as exc:
        raise DependencyMissingError(
            "fastembed is not installed. Install the extra: pip install 'ai-database[fastembed]'"
        ) from exc
    logger.info(f"Loading FastEmbed model {model_name}")
    return TextEmbedding(model_name=model_name)


class FastEmbedEmbeddingProvider(BatchedEmbeddingProvider):
    """Embeddings from a locally loaded FastEmbed model."""

    def __init__(
        self,
        model_name: str = "bge-small-en-v1.5",
        *,
        batch_size: int = 64,
        dimensions: int = 384,
    ) -> None:
        super().__init__(model_name, batch_size=batch_size, dimensions=dimensions)

    async def _load(self) -> Any:
        # Reading ONNX weights blocks; keep it off the event loop
        resolved = MODEL_ALIASES.get(self.model_name, self.model_name)
        return await asyncio.to_thread(_load_text_embedding, resolved)

    async def _embed_batch(self, backend: Any, batch: list[str]) -> list[list[float]]:
        def _embed() -> list[list[float]]:
            return [
                [float(v) for v in (vector.tolist() if hasattr(vector, "tolist") else vector)]
                for vector in backend.embed(batch, batch_size=self.batch_size)
            ]

        return await asyncio.to_thread(_embed)
