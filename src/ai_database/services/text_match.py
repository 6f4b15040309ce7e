"""Case-insensitive text matching used when a provider has no semantic search.

Scores fall in [0, 1] so they compare against the same thresholds as
semantic similarity:
  1.0   the hint contains a field value, or a field value contains the hint
  0..1  fraction of the hint's significant words found in the entity's text
"""

import re

from ai_database.providers.base import Record

_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
        "it", "of", "on", "or", "that", "the", "this", "to", "who", "with",
    }
)  # fmt: skip

# Field values shorter than this never count as contained in the hint
_MIN_CONTAINED_LENGTH = 3


def significant_words(text: str) -> list[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS]


def searchable_values(record: Record) -> list[str]:
    """Lower-cased string values of a record, identity and $-metadata excluded."""
    return [
        value.strip().lower()
        for key, value in record.items()
        if isinstance(value, str) and not key.startswith("$") and value.strip()
    ]


def text_match_score(hint: str, record: Record) -> float:
    needle = hint.strip().lower()
    if not needle:
        return 0.0

    values = searchable_values(record)
    for value in values:
        if needle in value or (len(value) >= _MIN_CONTAINED_LENGTH and value in needle):
            return 1.0

    words = significant_words(needle)
    if not words:
        return 0.0
    haystack = " ".join(values)
    return sum(1 for word in words if word in haystack) / len(words)


def rank_text_matches(
    hint: str,
    records: list[Record],
    threshold: float,
    exclude_ids: set[str] | None = None,
) -> list[tuple[Record, float]]:
    """Records scoring at least threshold, best first (stable for ties)."""
    scored = [
        (record, text_match_score(hint, record))
        for record in records
        if not exclude_ids or record.get("$id") not in exclude_ids
    ]
    matches = [(record, score) for record, score in scored if score >= threshold and score > 0]
    matches.sort(key=lambda item: item[1], reverse=True)
    return matches
