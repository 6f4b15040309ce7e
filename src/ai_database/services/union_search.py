"""Search across the member types of a union relation ('~>Person|Company').

The per-type search is injected as a callable so this module stays
independent of providers and scoring.
"""

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable

from ai_database.providers.base import Record


class SearchMode(StrEnum):
    ORDERED = "ordered"  # Stop at the first type with a qualifying match
    PARALLEL = "parallel"  # Search every type, best score wins


@dataclass(frozen=True)
class Match:
    """A candidate entity found by fuzzy search."""

    record: Record
    entity_type: str
    score: float
    method: str  # "semantic" | "text"

    @property
    def entity_id(self) -> str:
        return self.record["$id"]


type TypeSearchFn = Callable[[str], Awaitable[list[Match]]]


async def search_union(
    types: tuple[str, ...] | list[str],
    search_type: TypeSearchFn,
    mode: SearchMode = SearchMode.ORDERED,
) -> list[Match]:
    """Search each union member and combine the results.

    Ordered mode searches in declaration order and returns the first
    non-empty result. Parallel mode searches all members concurrently and
    merges them by score; ties keep declaration order.
    """
    if mode is SearchMode.ORDERED:
        for entity_type in types:
            matches = await search_type(entity_type)
            if matches:
                return matches
        return []

    per_type = await asyncio.gather(*(search_type(t) for t in types))
    merged = [match for matches in per_type for match in matches]
    merged.sort(key=lambda m: m.score, reverse=True)
    return merged
