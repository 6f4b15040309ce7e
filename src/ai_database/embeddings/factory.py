"""Factory for the embedding provider selected in configuration."""

from ai_database.config import AIDatabaseConfig
from ai_database.embeddings.fastembed_provider import FastEmbedEmbeddingProvider
from ai_database.embeddings.openai_provider import OpenAIEmbeddingProvider
from ai_database.embeddings.provider import EmbeddingProvider


def create_embedding_provider(config: AIDatabaseConfig) -> EmbeddingProvider | None:
    """Create the configured embedding provider, or None when semantic search is off.

    semantic_embedding_dimensions overrides each provider's default width
    (384 for FastEmbed, 1536 for OpenAI).
    """
    provider_name = config.semantic_embedding_provider
    if provider_name == "none":
        return None

    extra_kwargs: dict = {}
    if config.semantic_embedding_dimensions is not None:
        extra_kwargs["dimensions"] = config.semantic_embedding_dimensions

    if provider_name == "fastembed":
        return FastEmbedEmbeddingProvider(
            model_name=config.semantic_embedding_model,
            batch_size=config.semantic_embedding_batch_size,
            **extra_kwargs,
        )

    # The FastEmbed default model name means nothing to OpenAI
    model_name = config.semantic_embedding_model
    if model_name == "bge-small-en-v1.5":
        model_name = "text-embedding-3-small"
    return OpenAIEmbeddingProvider(
        model_name=model_name,
        batch_size=config.semantic_embedding_batch_size,
        **extra_kwargs,
    )
