"""Entity generation collaborators."""

from ai_database.config import AIDatabaseConfig
from ai_database.generation.base import GenerationRequest, Generator
from ai_database.generation.context import build_request, build_scope, interpolate
from ai_database.generation.openai_generator import OpenAIGenerator
from ai_database.generation.placeholder import PlaceholderGenerator


def create_generator(config: AIDatabaseConfig) -> Generator:
    """Create the generator selected by generation_provider."""
    if config.generation_provider == "openai":
        return OpenAIGenerator(
            model_name=config.generation_model,
            timeout=config.generation_timeout,
        )
    return PlaceholderGenerator()


__all__ = [
    "GenerationRequest",
    "Generator",
    "OpenAIGenerator",
    "PlaceholderGenerator",
    "build_request",
    "build_scope",
    "create_generator",
    "interpolate",
]
