"""
Search, ordering and page slicing for enriched records.

Everything here is pure: the aggregation view calls these on the records of a
load cycle after enrichment has been merged in.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from residence.core.models import Page, Resource, count_pages

FilterPredicate = Callable[[Resource], bool]


def resolve_path(record: Any, path: str) -> List[Any]:
    """
    Collect the values found at a dotted field path.

    Sequences are traversed element-wise, so ``residents.name`` on an apartment
    yields the name of every resident.
    """
    current: List[Any] = [record]
    for part in path.split("."):
        found: List[Any] = []
        for value in current:
            if isinstance(value, Mapping):
                if part in value:
                    found.append(value[part])
            elif isinstance(value, (list, tuple)):
                for element in value:
                    if isinstance(element, Mapping) and part in element:
                        found.append(element[part])
        current = found

    flat: List[Any] = []
    for value in current:
        if isinstance(value, (list, tuple)):
            flat.extend(value)
        else:
            flat.append(value)
    return flat


def build_search_predicate(text: Optional[str], fields: Sequence[str]) -> Optional[FilterPredicate]:
    """
    Case-insensitive substring predicate over ``fields``.

    Returns None for blank text, meaning "keep everything".
    """
    needle = (text or "").strip().lower()
    if not needle:
        return None

    def predicate(record: Resource) -> bool:
        for path in fields:
            for value in resolve_path(record, path):
                if value is not None and needle in str(value).lower():
                    return True
        return False

    return predicate


class SortKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    TIMESTAMP = "timestamp"
    RANK = "rank"


@dataclass(frozen=True)
class SortSpec:
    """One ordering criterion; records missing the field always sort last."""

    field: str
    descending: bool = False
    kind: SortKind = SortKind.TEXT
    # For RANK: values in display order, unknown values after them
    rank: Tuple[Any, ...] = ()

    def key(self, record: Resource) -> Any:
        values = resolve_path(record, self.field)
        value = values[0] if values else None
        if value is None or value == "":
            return None
        if self.kind == SortKind.TIMESTAMP:
            return parse_timestamp(value)
        if self.kind == SortKind.NUMBER:
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
        if self.kind == SortKind.RANK:
            return self.rank.index(value) if value in self.rank else len(self.rank)
        return str(value).casefold()


def parse_timestamp(value: Any) -> Optional[float]:
    """ISO-8601 string or datetime to a POSIX timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def id_sort_key(record: Resource, id_field: str = "id") -> Tuple[int, Any]:
    value = record.get(id_field)
    if isinstance(value, bool) or value is None:
        return (2, str(value))
    if isinstance(value, int):
        return (0, value)
    try:
        return (0, int(value))
    except (TypeError, ValueError):
        return (1, str(value))


def sort_records(
    records: Iterable[Resource], specs: Sequence[SortSpec], id_field: str = "id"
) -> List[Resource]:
    """Order by ``specs`` in priority order; ties break by id ascending."""
    ordered = sorted(records, key=lambda r: id_sort_key(r, id_field))

    # Stable sorts applied from the least to the most significant key
    for sort_key in reversed(specs):
        ordered.sort(key=_missing_last(sort_key), reverse=sort_key.descending)
    return ordered


def _missing_last(sort_key: SortSpec) -> Callable[[Resource], Tuple[bool, Any]]:
    def extract(record: Resource) -> Tuple[bool, Any]:
        value = sort_key.key(record)
        present = value is not None
        # reverse=True flips the flag too, so invert it for descending specs
        flag = present if sort_key.descending else not present
        return (flag, value if present else 0)

    return extract


def clamp_page_index(index: int, total_pages: int) -> int:
    return min(max(index, 1), max(total_pages, 1))


def paginate(records: Sequence[Resource], page_index: int, page_size: int) -> Page:
    """Slice ``records`` into the page at ``page_index``, clamped into range."""
    total_pages = count_pages(len(records), page_size)
    index = clamp_page_index(page_index, total_pages)
    start = (index - 1) * page_size
    return Page(
        items=list(records[start : start + page_size]),
        page_index=index,
        page_size=page_size,
        total_pages=total_pages,
        total_items=len(records),
    )
