"""Services that resolve relationships, cascade generation and seed reference data."""

from ai_database.services.cascade_service import (
    BranchContext,
    CascadeOptions,
    CascadePhase,
    CascadeProgress,
    CascadeService,
)
from ai_database.services.generation_service import GenerationService
from ai_database.services.relationship_resolver import (
    RelationshipResolver,
    ResolutionContext,
    stored_ids,
)
from ai_database.services.seed_service import SeedResult, SeedService
from ai_database.services.text_match import rank_text_matches, text_match_score
from ai_database.services.union_search import Match, SearchMode, search_union

__all__ = [
    # Resolution
    "Match",
    "RelationshipResolver",
    "ResolutionContext",
    "SearchMode",
    "rank_text_matches",
    "search_union",
    "stored_ids",
    "text_match_score",
    # Generation
    "BranchContext",
    "CascadeOptions",
    "CascadePhase",
    "CascadeProgress",
    "CascadeService",
    "GenerationService",
    # Seeding
    "SeedResult",
    "SeedService",
]
