"""Structural capability detection for storage providers.

Providers are not required to declare what they support. Instead the
detector looks for the methods each optional feature needs and caches the
answer per provider object. The cache holds weak references, so detecting a
provider never keeps it alive.

Usage:
    caps = detect_capabilities(provider)
    if caps.has_semantic_search:
        ...
    require_capability(caps, Capability.SEMANTIC_SEARCH)  # raises when missing
"""

import weakref
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from ai_database.errors import CapabilityNotSupportedError


class Capability(StrEnum):
    SEMANTIC_SEARCH = "semantic_search"
    HYBRID_SEARCH = "hybrid_search"
    EVENTS = "events"
    ACTIONS = "actions"
    ARTIFACTS = "artifacts"
    BATCH_OPERATIONS = "batch_operations"
    TRANSACTIONS = "transactions"


# Every listed method must be present for the capability to count,
# except batch operations where either method is enough.
_REQUIRED_METHODS: dict[Capability, tuple[str, ...]] = {
    Capability.SEMANTIC_SEARCH: ("semantic_search", "set_embeddings_config"),
    Capability.HYBRID_SEARCH: ("hybrid_search",),
    Capability.EVENTS: ("on", "emit", "list_events"),
    Capability.ACTIONS: ("create_action", "get_action", "update_action"),
    Capability.ARTIFACTS: ("get_artifact", "set_artifact"),
    Capability.TRANSACTIONS: ("begin_transaction",),
}
_BATCH_METHODS = ("with_concurrency", "map_with_concurrency")

_ALTERNATIVES: dict[Capability, str] = {
    Capability.SEMANTIC_SEARCH: "Use search() for keyword matching instead",
    Capability.HYBRID_SEARCH: "Use search() or semantic_search() instead",
    Capability.BATCH_OPERATIONS: "Process items sequentially instead",
    Capability.TRANSACTIONS: "Write directly through the provider instead",
}


@dataclass(frozen=True)
class ProviderCapabilities:
    """Which optional features a provider supports."""

    has_semantic_search: bool = False
    has_hybrid_search: bool = False
    has_events: bool = False
    has_actions: bool = False
    has_artifacts: bool = False
    has_batch_operations: bool = False
    has_transactions: bool = False

    @property
    def tags(self) -> frozenset[Capability]:
        return frozenset(c for c in Capability if getattr(self, f"has_{c.value}"))

    def supports(self, capability: Capability | str) -> bool:
        return _as_capability(capability) in self.tags


def _as_capability(capability: Capability | str) -> Capability:
    # Accept both "semantic_search" and the flag name "has_semantic_search"
    if isinstance(capability, str) and capability.startswith("has_"):
        capability = capability[len("has_") :]
    return Capability(capability)


def _has_methods(provider: object, names: tuple[str, ...]) -> bool:
    return all(callable(getattr(provider, name, None)) for name in names)


def _probe(provider: object) -> ProviderCapabilities:
    flags = {
        f"has_{capability.value}": _has_methods(provider, methods)
        for capability, methods in _REQUIRED_METHODS.items()
    }
    flags["has_batch_operations"] = any(
        callable(getattr(provider, name, None)) for name in _BATCH_METHODS
    )
    return ProviderCapabilities(**flags)


# --- Cache ---
# Keyed by id(); the weakref callback drops the entry when the provider is
# collected so a recycled id never returns stale capabilities.

_cache: dict[int, tuple[weakref.ref, ProviderCapabilities]] = {}


def _forget(key: int, ref: weakref.ref) -> None:
    entry = _cache.get(key)
    if entry is not None and entry[0] is ref:
        del _cache[key]


def detect_capabilities(provider: object) -> ProviderCapabilities:
    """Probe a provider for optional features, memoized per provider object.

    Never raises for a provider that lacks optional features. Providers that
    cannot be weakly referenced are probed on every call.
    """
    key = id(provider)
    cached = _cache.get(key)
    if cached is not None and cached[0]() is provider:
        return cached[1]

    capabilities = _probe(provider)
    try:
        ref = weakref.ref(provider, lambda dead, key=key: _forget(key, dead))
    except TypeError:
        logger.debug(f"Provider {type(provider).__name__} is not weak-referenceable; not caching")
        return capabilities

    _cache[key] = (ref, capabilities)
    logger.debug(
        f"Detected capabilities for {type(provider).__name__}: "
        f"{sorted(c.value for c in capabilities.tags) or 'none'}"
    )
    return capabilities


def clear_capability_cache(provider: object | None = None) -> None:
    """Invalidate cached capabilities for one provider, or for all of them.

    Call this after a provider's method surface changes at runtime.
    """
    if provider is None:
        _cache.clear()
    else:
        _cache.pop(id(provider), None)


def require_capability(
    capabilities: ProviderCapabilities,
    capability: Capability | str,
    message: str | None = None,
) -> None:
    """Raise CapabilityNotSupportedError unless the capability is present.

    This is the gate in front of any optional-feature call made on behalf of
    a caller who explicitly asked for that feature.
    """
    tag = _as_capability(capability)
    if capabilities.supports(tag):
        return
    raise CapabilityNotSupportedError(tag.value, message, _ALTERNATIVES.get(tag))


# --- Warnings ---

_warned_features: set[str] = set()


def warn_if_unavailable(
    capabilities: ProviderCapabilities,
    capability: Capability | str,
    feature: str,
) -> bool:
    """Log a one-time warning when a feature degrades because a capability is missing.

    Returns True when the capability is available.
    """
    tag = _as_capability(capability)
    if capabilities.supports(tag):
        return True
    if feature not in _warned_features:
        _warned_features.add(feature)
        alternative = _ALTERNATIVES.get(tag)
        hint = f" {alternative}." if alternative else ""
        logger.warning(f"{feature} requires {tag.value}, which this provider lacks.{hint}")
    return False


def clear_warning_history() -> None:
    _warned_features.clear()
