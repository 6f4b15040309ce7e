"""Runtime configuration for ai-database.

Values come from keyword arguments, then AI_DATABASE_* environment variables,
then the defaults below. Only the Runtime and the backend factories read this;
the parser, graph builder and resolver take explicit parameters.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AIDatabaseConfig(BaseSettings):
    """Settings for relationship resolution, cascades and optional backends."""

    model_config = SettingsConfigDict(
        env_prefix="AI_DATABASE_",
        extra="ignore",
    )

    # --- Resolution ---
    default_fuzzy_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Similarity a fuzzy match must reach when neither the field nor the entity sets one",
    )
    semantic_search_limit: int = Field(
        default=10, gt=0, description="Maximum candidates fetched per fuzzy lookup"
    )

    # --- Cascade ---
    default_cascade_depth: int = Field(
        default=3, ge=0, description="Cascade depth used when cascading without max_depth"
    )
    max_cascade_depth: int = Field(
        default=10, ge=0, description="Hard ceiling on cascade depth regardless of options"
    )
    cascade_concurrency: int = Field(
        default=4, gt=0, description="Maximum sibling branches generating at once"
    )

    # --- Generation ---
    generation_provider: Literal["placeholder", "openai"] = "placeholder"
    generation_model: str = "gpt-4o-mini"
    generation_timeout: float = Field(default=60.0, gt=0)

    # --- Semantic embeddings ---
    semantic_embedding_provider: Literal["none", "fastembed", "openai"] = "none"
    semantic_embedding_model: str = "bge-small-en-v1.5"
    semantic_embedding_dimensions: int | None = None
    semantic_embedding_batch_size: int = Field(default=64, gt=0)

    # --- Seeding ---
    seed_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout for $seed downloads")

    # --- Logging ---
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_depths(self) -> "AIDatabaseConfig":
        if self.default_cascade_depth > self.max_cascade_depth:
            raise ValueError(
                f"default_cascade_depth ({self.default_cascade_depth}) exceeds "
                f"max_cascade_depth ({self.max_cascade_depth})"
            )
        return self
