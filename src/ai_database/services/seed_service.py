"""Load reference data for entities that declare a $seed URL.

  Occupation:
    $seed: https://example.com/occupations.tsv
    $id: $.Code
    title: $.Title

Rows are fetched over HTTP, columns are mapped onto fields through their
'$.column' definitions and the records are upserted, so seeding twice
leaves the same data behind.
"""

import csv
import io
from dataclasses import dataclass
from typing import Any

import httpx
import logfire
from loguru import logger

from ai_database.errors import SeedError
from ai_database.providers.base import DBProvider
from ai_database.schema.graph import ParsedEntity, ParsedGraph

COLUMN_PREFIX = "$."


@dataclass(frozen=True)
class SeedResult:
    entity_type: str
    count: int
    duplicates: int = 0


def column_name(reference: Any) -> str | None:
    """'$.Title' -> 'Title'; anything else -> None."""
    if isinstance(reference, str) and reference.startswith(COLUMN_PREFIX):
        return reference[len(COLUMN_PREFIX) :].strip() or None
    return None


def parse_delimited(text: str, url: str = "") -> list[dict[str, str]]:
    """Parse TSV or CSV text into rows keyed by header.

    TSV is used when the URL ends in .tsv or the header line contains a tab.
    """
    text = text.lstrip("\ufeff")
    header = text.split("\n", 1)[0]
    delimiter = "\t" if url.lower().split("?", 1)[0].endswith(".tsv") or "\t" in header else ","
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    rows = []
    for row in reader:
        cleaned = {
            (key or "").strip(): (value or "").strip()
            for key, value in row.items()
            if key is not None
        }
        if any(cleaned.values()):
            rows.append(cleaned)
    return rows


def map_rows(entity: ParsedEntity, rows: list[dict[str, str]]) -> list[dict[str, Any]]:
    """Map source columns onto entity fields; rows without a primary key are skipped."""
    id_column = column_name(entity.directives.get("$id"))
    columns = {name: f.source_column for name, f in entity.fields.items() if f.source_column}

    records = []
    for index, row in enumerate(rows):
        record: dict[str, Any] = {}
        if id_column is not None:
            entity_id = row.get(id_column)
            if not entity_id:
                logger.warning(f"Seed {entity.name}: row {index + 1} has no {id_column}, skipped")
                continue
            record["$id"] = entity_id
        for field_name, column in columns.items():
            if column in row:
                record[field_name] = row[column]
        records.append(record)
    return records


class SeedService:
    """Fetches $seed data and upserts it through the provider."""

    def __init__(
        self,
        graph: ParsedGraph,
        provider: DBProvider,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.graph = graph
        self.provider = provider
        self.timeout = timeout
        self.transport = transport

    def seed_url(self, entity_type: str) -> str:
        entity = self.graph.require_entity(entity_type)
        url = entity.directives.get("$seed")
        if not isinstance(url, str) or not url:
            raise SeedError(entity_type, "", "entity has no $seed directive")
        return url

    @logfire.instrument()
    async def fetch(self, entity_type: str, url: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise SeedError(
                    entity_type,
                    url,
                    f"HTTP {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise SeedError(entity_type, url, str(e) or type(e).__name__) from e
        return response.text

    async def seed(self, entity_type: str) -> SeedResult:
        """Load the entity's reference data.

        Duplicate ids within one source are resolved last-write-wins.

        Raises:
            SeedError: If the entity has no $seed directive or the download fails.
        """
        entity = self.graph.require_entity(entity_type)
        url = self.seed_url(entity_type)

        with logfire.span("Seed entity", entity_type=entity_type, url=url):  # pyright: ignore [reportGeneralTypeIssues]
            text = await self.fetch(entity_type, url)
            records = map_rows(entity, parse_delimited(text, url))

            by_id: dict[str, dict[str, Any]] = {}
            anonymous: list[dict[str, Any]] = []
            duplicates = 0
            for record in records:
                entity_id = record.pop("$id", None)
                if entity_id is None:
                    anonymous.append(record)
                    continue
                if entity_id in by_id:
                    duplicates += 1
                    logger.debug(f"Seed {entity_type}: duplicate id {entity_id}, last row wins")
                by_id[entity_id] = record

            for entity_id, data in by_id.items():
                if await self.provider.get(entity_type, entity_id) is not None:
                    await self.provider.update(entity_type, entity_id, data)
                else:
                    await self.provider.create(entity_type, entity_id, data)
            for data in anonymous:
                await self.provider.create(entity_type, None, data)

        count = len(by_id) + len(anonymous)
        if duplicates:
            logger.warning(f"Seed {entity_type}: {duplicates} duplicate ids resolved last-write-wins")
        logger.info(f"Seeded {count} {entity_type} records from {url}")
        return SeedResult(entity_type=entity_type, count=count, duplicates=duplicates)
