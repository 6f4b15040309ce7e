"""Typed errors raised by the schema parser, resolver, cascade engine and providers."""


class AIDatabaseError(Exception):
    """Base exception for all ai-database errors."""

    pass


# --- Schema ---


class ParseError(AIDatabaseError, ValueError):
    """Raised when a field definition does not match the field grammar."""

    def __init__(self, definition: object, message: str, location: str | None = None):
        self.definition = definition
        self.reason = message
        self.location = location
        where = f" at {location}" if location else ""
        super().__init__(f"Invalid field definition {definition!r}{where}: {message}")

    def with_location(self, location: str) -> "ParseError":
        """Return a copy of this error annotated with an Entity.field location."""
        return ParseError(self.definition, self.reason, location)


class SchemaError(AIDatabaseError):
    """Raised when a schema references entity types it does not declare."""

    pass


class CircularDependencyError(SchemaError):
    """Raised when hard generation dependencies form a cycle."""

    def __init__(self, cycle_path: list[str]):
        self.cycle_path = cycle_path
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle_path)}")


# --- Provider capabilities ---


class CapabilityNotSupportedError(AIDatabaseError):
    """Raised when a caller explicitly requests an optional feature the provider lacks."""

    code = "CAPABILITY_NOT_SUPPORTED"

    def __init__(
        self,
        capability: str,
        message: str | None = None,
        alternative: str | None = None,
    ):
        self.capability = capability
        self.alternative = alternative
        self.message = message or f"Capability '{capability}' is not supported by this provider"
        super().__init__(self.message)


class SemanticSearchUnavailableError(AIDatabaseError):
    """Raised when a provider exposes semantic search but cannot serve it right now."""

    pass


# --- Provider storage ---


class ProviderError(AIDatabaseError):
    """Base class for storage-level failures reported by a provider."""

    pass


class EntityNotFoundError(ProviderError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {entity_type}/{entity_id}")


class DuplicateEntityError(ProviderError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Entity already exists: {entity_type}/{entity_id}")


class TransactionError(ProviderError):
    """Raised when a transaction cannot be committed or is used after it finished."""

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message)


# --- Resolution and generation ---


class ResolutionError(AIDatabaseError):
    """Raised when a required relationship cannot be resolved."""

    def __init__(self, entity_type: str, field: str, message: str):
        self.entity_type = entity_type
        self.field = field
        super().__init__(f"{entity_type}.{field}: {message}")


class GenerationError(AIDatabaseError):
    """Raised when the generation collaborator fails to produce field values."""

    def __init__(self, entity_type: str, message: str):
        self.entity_type = entity_type
        super().__init__(f"Failed to generate {entity_type}: {message}")


class CascadeCancelledError(AIDatabaseError):
    """Raised or reported when a cascade is cancelled or exceeds its deadline."""

    def __init__(self, depth: int, entity_type: str | None = None, reason: str = "cancelled"):
        self.depth = depth
        self.entity_type = entity_type
        self.reason = reason
        target = f" before creating {entity_type}" if entity_type else ""
        super().__init__(f"Cascade {reason} at depth {depth}{target}")


# --- Seeding ---


class SeedError(AIDatabaseError):
    """Raised when reference data for a $seed directive cannot be loaded."""

    def __init__(
        self,
        entity_type: str,
        url: str,
        message: str,
        status_code: int | None = None,
    ):
        self.entity_type = entity_type
        self.url = url
        self.status_code = status_code
        super().__init__(f"Failed to seed {entity_type} from {url}: {message}")


# --- Optional dependencies ---


class DependencyMissingError(AIDatabaseError):
    """Raised when an optional backend (embeddings, generation) is missing or misconfigured."""

    pass
