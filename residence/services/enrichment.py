"""
Secondary lookups merged into primary records before display.

Two shapes are supported:

* ``ItemEnricher`` issues one request per record (``/apartments/<id>/residents/``).
* ``CollectionJoin`` fetches a whole collection once per load (``/residents/``)
  and indexes it by key, replacing the per-record lookup of a foreign key.

Failures are isolated: a failing item lookup degrades that record's field to
its fallback value, a failing join degrades the joined field of every record.
Neither aborts the load.
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog

from residence.core.models import Resource
from residence.data.api_client import ApiClient

logger = structlog.get_logger(__name__)


class _Label:
    """Placeholder for the configured "unknown" label."""

    def __repr__(self) -> str:
        return "LABEL"


LABEL = _Label()


def resolve_fallback(fallback: Any, label: str) -> Any:
    if fallback is LABEL:
        return label
    # Fresh copy so records never share a mutable fallback
    return copy.deepcopy(fallback)


ItemFetch = Callable[[ApiClient, Resource], Awaitable[Any]]
Derive = Callable[[Resource, Any], Dict[str, Any]]


@dataclass
class ItemEnricher:
    """A per-record secondary fetch."""

    field: str
    fetch: ItemFetch
    fallback: Any = LABEL
    derive: Optional[Derive] = None

    def merge(self, record: Resource, value: Any) -> Dict[str, Any]:
        fields = {self.field: value}
        if self.derive is not None:
            fields.update(self.derive(record, value))
        return fields


def sub_resource(
    field: str,
    path_for: Callable[[Resource], str],
    fallback: Any = LABEL,
    select: Optional[Callable[[Any], Any]] = None,
    derive: Optional[Derive] = None,
) -> ItemEnricher:
    """Enricher that GETs ``path_for(record)`` and optionally picks a value out of the body."""

    async def fetch(client: ApiClient, record: Resource) -> Any:
        payload = await client.get(path_for(record))
        return select(payload) if select is not None else payload

    return ItemEnricher(field=field, fetch=fetch, fallback=fallback, derive=derive)


@dataclass
class CollectionJoin:
    """A secondary collection fetched once and joined on a foreign key."""

    field: str
    path: str
    foreign_key: str
    value: Union[str, Callable[[Resource], Any]] = "name"
    key: str = "id"
    fallback: Any = LABEL

    def extract(self, joined: Resource) -> Any:
        if callable(self.value):
            return self.value(joined)
        return joined.get(self.value)


async def fetch_join_indexes(
    client: ApiClient, joins: Sequence[CollectionJoin]
) -> List[Optional[Dict[Any, Resource]]]:
    """Fetch every join collection concurrently; a failed join yields None."""

    async def fetch_one(join: CollectionJoin) -> Optional[Dict[Any, Resource]]:
        try:
            rows = await client.fetch_all(join.path)
        except Exception as e:
            logger.warning(
                "Join lookup failed, using fallback",
                path=join.path,
                field=join.field,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        return {row.get(join.key): row for row in rows if isinstance(row, dict)}

    return list(await asyncio.gather(*(fetch_one(join) for join in joins)))


def apply_joins(
    record: Resource,
    joins: Sequence[CollectionJoin],
    indexes: Sequence[Optional[Dict[Any, Resource]]],
    label: str,
) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for join, index in zip(joins, indexes):
        joined = index.get(record.get(join.foreign_key)) if index else None
        value = join.extract(joined) if joined is not None else None
        fields[join.field] = value if value is not None else resolve_fallback(join.fallback, label)
    return fields


async def _enrich_one(
    client: ApiClient,
    record: Resource,
    enricher: ItemEnricher,
    semaphore: asyncio.Semaphore,
    label: str,
) -> Dict[str, Any]:
    try:
        async with semaphore:
            value = await enricher.fetch(client, record)
        return enricher.merge(record, value)
    except Exception as e:
        logger.warning(
            "Enrichment failed, using fallback",
            record_id=record.get("id"),
            field=enricher.field,
            error=str(e),
            error_type=type(e).__name__,
        )
        return enricher.merge(record, resolve_fallback(enricher.fallback, label))


async def enrich_records(
    client: ApiClient,
    records: Sequence[Resource],
    enrichers: Sequence[ItemEnricher] = (),
    joins: Sequence[CollectionJoin] = (),
    max_concurrency: int = 6,
    label: str = "unknown",
) -> List[Resource]:
    """
    Merge join and per-item enrichment into copies of ``records``.

    All lookups of the batch run concurrently (bounded by ``max_concurrency``)
    and are joined before returning. Input order is preserved.
    """
    if not records:
        return []

    semaphore = asyncio.Semaphore(max_concurrency)

    async def enrich(record: Resource) -> Dict[str, Any]:
        parts = await asyncio.gather(
            *(_enrich_one(client, record, e, semaphore, label) for e in enrichers)
        )
        merged: Dict[str, Any] = {}
        for part in parts:
            merged.update(part)
        return merged

    indexes_task = fetch_join_indexes(client, joins) if joins else _no_indexes()
    indexes, item_fields = await asyncio.gather(
        indexes_task, asyncio.gather(*(enrich(record) for record in records))
    )

    enriched = [
        {**record, **apply_joins(record, joins, indexes, label), **fields}
        for record, fields in zip(records, item_fields)
    ]
    logger.debug(
        "Records enriched",
        records=len(enriched),
        enrichers=len(enrichers),
        joins=len(joins),
    )
    return enriched


async def _no_indexes() -> List[Optional[Dict[Any, Resource]]]:
    return []
