"""Common test fixtures."""

import math
import re
import zlib

import pytest

from ai_database.config import AIDatabaseConfig
from ai_database.generation.placeholder import PlaceholderGenerator
from ai_database.providers.capabilities import clear_capability_cache, clear_warning_history
from ai_database.providers.memory import MemoryProvider, SemanticMemoryProvider
from ai_database.schema.graph import build_graph

_WORD_RE = re.compile(r"[a-z0-9]+")


class RecordingGenerator(PlaceholderGenerator):
    """Placeholder generator that keeps every request it was given."""

    def __init__(self) -> None:
        super().__init__()
        self.requests = []

    async def generate(self, directives, request):
        self.requests.append(request)
        return await super().generate(directives, request)


class BagOfWordsEmbeddingProvider:
    """Deterministic embeddings: each word hashes into one of `dimensions` buckets.

    Texts sharing words get a positive cosine similarity; identical word sets
    score 1.0.
    """

    model_name = "bag-of-words"

    def __init__(self, dimensions: int = 512):
        self.dimensions = dimensions
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in _WORD_RE.findall(text.lower()):
            vector[zlib.crc32(word.encode()) % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    async def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return self._vector(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [self._vector(text) for text in texts]


@pytest.fixture(autouse=True)
def reset_capability_state():
    """Capability cache and one-time warnings are module level; isolate tests."""
    clear_capability_cache()
    clear_warning_history()
    yield
    clear_capability_cache()
    clear_warning_history()


@pytest.fixture
def config_env(monkeypatch) -> None:
    """Remove AI_DATABASE_* variables so config defaults apply."""
    import os

    for key in list(os.environ):
        if key.startswith("AI_DATABASE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def app_config(config_env) -> AIDatabaseConfig:
    return AIDatabaseConfig()


@pytest.fixture
def memory_provider() -> MemoryProvider:
    return MemoryProvider()


@pytest.fixture
def embedding_provider() -> BagOfWordsEmbeddingProvider:
    return BagOfWordsEmbeddingProvider()


@pytest.fixture
def semantic_provider(embedding_provider) -> SemanticMemoryProvider:
    return SemanticMemoryProvider(embedding_provider)


@pytest.fixture
def generator() -> RecordingGenerator:
    return RecordingGenerator()


@pytest.fixture
def blog_schema() -> dict:
    return {
        "Blog": {
            "$instructions": "A technology blog",
            "name": "string",
            "description": "Describe what the blog {name} covers",
            "posts": ["->Post.blog"],
        },
        "Post": {
            "title": "string",
            "body": "markdown",
            "author": "->Author.posts",
            "tags": "~>Tag[]",
        },
        "Author": {
            "name": "string",
            "email": "email?",
        },
        "Tag": {
            "name": "string",
        },
    }


@pytest.fixture
def blog_graph(blog_schema):
    return build_graph(blog_schema)


@pytest.fixture
def log_messages():
    """Capture loguru messages at WARNING and above."""
    from loguru import logger

    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(sink_id)
