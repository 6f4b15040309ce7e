"""ai-database: a schema DSL and relationship engine for AI-generated data."""

from importlib.metadata import PackageNotFoundError, version

from ai_database.config import AIDatabaseConfig
from ai_database.entity import Entity, LazyRelation
from ai_database.errors import (
    AIDatabaseError,
    CapabilityNotSupportedError,
    CascadeCancelledError,
    GenerationError,
    ParseError,
    ResolutionError,
    SchemaError,
    SeedError,
)
from ai_database.providers import MemoryProvider, SemanticMemoryProvider, detect_capabilities
from ai_database.runtime import Runtime
from ai_database.schema import ParsedField, ParsedGraph, build_graph, parse_field
from ai_database.services import CascadeOptions, CascadeProgress
from ai_database.utils import setup_logging

try:
    __version__ = version("ai-database")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    # Runtime
    "AIDatabaseConfig",
    "CascadeOptions",
    "CascadeProgress",
    "Entity",
    "LazyRelation",
    "Runtime",
    "setup_logging",
    # Schema
    "ParsedField",
    "ParsedGraph",
    "build_graph",
    "parse_field",
    # Providers
    "MemoryProvider",
    "SemanticMemoryProvider",
    "detect_capabilities",
    # Errors
    "AIDatabaseError",
    "CapabilityNotSupportedError",
    "CascadeCancelledError",
    "GenerationError",
    "ParseError",
    "ResolutionError",
    "SchemaError",
    "SeedError",
]
