"""Storage provider contracts, capability detection and reference implementations."""

from ai_database.providers.base import DBProvider, Record, Transaction
from ai_database.providers.capabilities import (
    Capability,
    ProviderCapabilities,
    clear_capability_cache,
    clear_warning_history,
    detect_capabilities,
    require_capability,
    warn_if_unavailable,
)
from ai_database.providers.memory import EmbeddingsConfig, MemoryProvider, SemanticMemoryProvider
from ai_database.providers.transaction import TransactionBuffer

__all__ = [
    "Capability",
    "DBProvider",
    "EmbeddingsConfig",
    "MemoryProvider",
    "ProviderCapabilities",
    "Record",
    "SemanticMemoryProvider",
    "Transaction",
    "TransactionBuffer",
    "clear_capability_cache",
    "clear_warning_history",
    "detect_capabilities",
    "require_capability",
    "warn_if_unavailable",
]
