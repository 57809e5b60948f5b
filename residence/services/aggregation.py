"""
Paginated aggregation view-model.

Every list screen runs the same linear pipeline on each load cycle::

    fetch -> enrich (fan-out) -> filter -> sort -> paginate

A ``ViewDefinition`` describes one screen's pipeline declaratively and an
``AggregationViewModel`` executes it against the API for one session.

Loads are keyed by a generation counter. Starting a load cancels the fan-out
of the previous one, and any result that arrives for a superseded generation
is dropped, so a slow response can never overwrite fresher state.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from residence.core.exceptions import DataAccessError, ServerError, StaleLoadError, ValidationError
from residence.core.models import (
    Attachment,
    CollectionPage,
    Page,
    PaginationMode,
    Resource,
    Session,
    WriteOperation,
    count_pages,
)
from residence.data import endpoints
from residence.data.api_client import ApiClient
from residence.services.enrichment import CollectionJoin, ItemEnricher, enrich_records
from residence.services.filtering import (
    SortSpec,
    build_search_predicate,
    clamp_page_index,
    paginate,
    sort_records,
)
from residence.utils.reliability import track_performance

logger = structlog.get_logger(__name__)

Action = Callable[[ApiClient], Awaitable[Any]]


@dataclass
class ViewDefinition:
    """Declarative description of one list screen."""

    name: str
    path: Union[str, Callable[[Session], str]]
    title: str = ""
    mode: PaginationMode = PaginationMode.LOCAL
    # The primary GET returns one object whose ``items_key`` holds the records
    items_key: Optional[str] = None
    # Collection receiving creates, when it differs from ``path``
    write_path: Union[None, str, Callable[[Session], str]] = None
    enrichers: Sequence[ItemEnricher] = ()
    joins: Sequence[CollectionJoin] = ()
    search_fields: Sequence[str] = ()
    sort: Sequence[SortSpec] = ()
    # Applied to raw records before enrichment (e.g. unpaid invoices only)
    include: Optional[Callable[[Resource], bool]] = None
    # Applied to enriched records before filtering (e.g. grouping)
    transform: Optional[Callable[[List[Resource]], List[Resource]]] = None
    required_fields: Sequence[str] = ()
    writable_fields: Sequence[str] = ()
    replace_on_update: bool = False
    form_writes: bool = False
    columns: Sequence[str] = ()
    page_size: Optional[int] = None
    id_field: str = "id"

    def collection_path(self, session: Session) -> str:
        return self.path(session) if callable(self.path) else self.path

    def write_collection_path(self, session: Session) -> str:
        if self.write_path is None:
            return self.collection_path(session)
        return self.write_path(session) if callable(self.write_path) else self.write_path

    @property
    def enriched_fields(self) -> Tuple[str, ...]:
        return tuple(e.field for e in self.enrichers) + tuple(j.field for j in self.joins)

    def validate(self, resource: Resource, partial: bool = False) -> None:
        """Raise ValidationError when a required field is missing or blank."""
        missing = []
        for name in self.required_fields:
            if partial and name not in resource:
                continue
            value = resource.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        if missing:
            raise ValidationError(
                f"Please fill in: {', '.join(missing)}", missing_fields=missing
            )

    def payload(self, resource: Resource) -> Resource:
        """Strip ids and enrichment from a record before it is written back."""
        if self.writable_fields:
            return {k: v for k, v in resource.items() if k in self.writable_fields}
        skip = {self.id_field, *self.enriched_fields}
        return {k: v for k, v in resource.items() if k not in skip}


@dataclass
class _ServerWindow:
    """Enriched rows of the server page(s) holding the current local page."""

    records: List[Resource] = field(default_factory=list)
    # Position of records[0] in the whole collection
    start: int = 0
    first: int = 1
    last: int = 1
    next: Optional[str] = None
    previous: Optional[str] = None
    count: int = 0
    paginated: bool = True

    def covers(self, start: int, size: int) -> bool:
        end = min(start + size, self.count)
        return self.start <= start and end <= self.start + len(self.records)


def _observed_page_size(envelope: CollectionPage, server_index: int) -> Optional[int]:
    """Server page length implied by one response, when it can be told."""
    rows = len(envelope.results)
    if envelope.next is not None and rows:
        return rows
    if envelope.next is None and server_index > 1 and envelope.count > rows:
        return (envelope.count - rows) // (server_index - 1)
    return None


class AggregationViewModel:
    """
    Executes a ViewDefinition and holds the state one screen renders.

    State:
        page: the Page currently displayed
        records: every record of the current load after filtering and sorting
        error: user-visible message of the last failed primary fetch, or None
        loading: whether a load is in flight
    """

    def __init__(
        self,
        client: ApiClient,
        session: Session,
        definition: ViewDefinition,
        page_size: Optional[int] = None,
        max_concurrency: int = 6,
        fallback_label: str = "unknown",
    ):
        self.client = client
        self.session = session
        self.definition = definition
        self.page_size = page_size or definition.page_size or 5
        self.max_concurrency = max_concurrency
        self.fallback_label = fallback_label

        self.page = Page.empty(self.page_size)
        self.records: List[Resource] = []
        self.filter_text = ""
        self.error: Optional[str] = None
        self.loading = False

        self._generation = 0
        self._inflight: Optional[asyncio.Task] = None
        self._server_backed = False
        self._window = _ServerWindow()
        # Rows per server page; None until a response shows it
        self._server_page_size: Optional[int] = None
        self.log = logger.bind(view=definition.name)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def path(self) -> str:
        return self.definition.collection_path(self.session)

    # Generation bookkeeping

    def _begin(self) -> int:
        self._generation += 1
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            self.log.debug("Cancelled superseded load", generation=self._generation - 1)
        self.loading = True
        return self._generation

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise StaleLoadError(generation, self._generation)

    async def _run(self, generation: int, work: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(work)
        self._inflight = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise StaleLoadError(generation, self._generation)
            raise
        finally:
            if self._inflight is task:
                self._inflight = None
        self._ensure_current(generation)
        return result

    def _finish(self, generation: int) -> None:
        if generation == self._generation:
            self.loading = False

    # Pipeline stages

    async def _enrich(self, records: List[Resource]) -> List[Resource]:
        if self.definition.include is not None:
            records = [r for r in records if self.definition.include(r)]
        enriched = await enrich_records(
            self.client,
            records,
            enrichers=self.definition.enrichers,
            joins=self.definition.joins,
            max_concurrency=self.max_concurrency,
            label=self.fallback_label,
        )
        if self.definition.transform is not None:
            enriched = self.definition.transform(enriched)
        return enriched

    def _filter_and_sort(self, records: List[Resource]) -> List[Resource]:
        predicate = build_search_predicate(self.filter_text, self.definition.search_fields)
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return sort_records(records, self.definition.sort, self.definition.id_field)

    async def _collect_all(self) -> List[Resource]:
        if self.definition.items_key:
            container = await self.client.get(self.path) or {}
            raw = list(container.get(self.definition.items_key) or [])
        else:
            raw = await self.client.fetch_all(self.path)
        return self._filter_and_sort(await self._enrich(raw))

    async def _server_rows(self, envelope: CollectionPage) -> List[Resource]:
        records = await self._enrich(list(envelope.results))
        return sort_records(records, self.definition.sort, self.definition.id_field)

    async def _collect_server_page(
        self, index: int, window: Optional[_ServerWindow] = None, relearn: bool = True
    ) -> Tuple[_ServerWindow, int]:
        """
        Fetch the server page(s) holding local page ``index``.

        Local pages map onto server pages by offset, so a server that ignores
        ``page_size`` still has every row reachable. ``window`` is the one
        currently shown; its cursors serve the server pages next to it.
        """
        start = (index - 1) * self.page_size
        server_size = self._server_page_size or self.page_size
        server_index = start // server_size + 1

        url = None
        if window is not None and window.paginated:
            if server_index == window.last + 1:
                url = window.next
            elif server_index == window.first - 1:
                url = window.previous

        try:
            if url:
                envelope = await self.client.fetch_collection(url)
            else:
                envelope = await self.client.fetch_collection(
                    self.path, params={"page": server_index, "page_size": self.page_size}
                )
        except ServerError as e:
            # The page vanished (rows deleted since the last load): start over
            if e.status_code != 404 or index == 1:
                raise
            return await self._collect_server_page(1)

        if not envelope.is_paginated:
            rows = await self._server_rows(envelope)
            return _ServerWindow(records=rows, count=len(rows), paginated=False), index

        observed = _observed_page_size(envelope, server_index)
        if observed and observed != server_size:
            self.log.info(
                "Server page size differs from view page size",
                server_page_size=observed,
                page_size=self.page_size,
            )
            self._server_page_size = server_size = observed
            if server_index > 1 and relearn:
                # The offset was computed with the wrong server page size
                return await self._collect_server_page(index, relearn=False)

        total_pages = count_pages(envelope.count, self.page_size)
        if total_pages and index > total_pages:
            return await self._collect_server_page(total_pages)

        window = _ServerWindow(
            records=await self._server_rows(envelope),
            start=(server_index - 1) * server_size,
            first=server_index,
            last=server_index,
            next=envelope.next,
            previous=envelope.previous,
            count=envelope.count,
        )
        # A local page may straddle two server pages
        while window.next and not window.covers(start, self.page_size):
            envelope = await self.client.fetch_collection(window.next)
            if not envelope.results:
                break
            window.records.extend(await self._server_rows(envelope))
            window.last += 1
            window.next = envelope.next
        return window, index

    def _apply_server_page(self, window: _ServerWindow, index: int) -> Page:
        self.records = window.records
        if not window.paginated:
            # The endpoint ignored the page parameters and sent everything
            self._server_backed = False
            self.page = paginate(window.records, index, self.page_size)
            return self.page

        total_pages = count_pages(window.count, self.page_size)
        if window.records and total_pages == 0:
            total_pages = 1
        index = clamp_page_index(index, total_pages)
        offset = (index - 1) * self.page_size - window.start
        self._window = window
        self._server_backed = True
        self.page = Page(
            items=window.records[offset : offset + self.page_size] if total_pages else [],
            page_index=index,
            page_size=self.page_size,
            total_pages=total_pages,
            total_items=max(window.count, len(window.records)),
        )
        return self.page

    def _uses_server_pages(self) -> bool:
        return self.definition.mode == PaginationMode.SERVER and not self.filter_text.strip()

    # Operations

    @track_performance("view_load")
    async def load(self, filter_text: Optional[str] = None) -> Page:
        """
        Run the full pipeline and return the page at the current index.

        ``filter_text=None`` keeps the current search; ``""`` clears it. On a
        primary fetch failure ``error`` is set and the previous page is
        returned unchanged.
        """
        if filter_text is not None:
            self.filter_text = filter_text
        generation = self._begin()

        try:
            if self._uses_server_pages():
                index = self.page.page_index if self._server_backed else 1
                window, index = await self._run(generation, self._collect_server_page(index))
                page = self._apply_server_page(window, index)
            else:
                records = await self._run(generation, self._collect_all())
                self._server_backed = False
                self.records = records
                page = self.page = paginate(records, self.page.page_index, self.page_size)

        except StaleLoadError as e:
            self.log.info("Discarded stale load", generation=e.generation, current=e.current)
            return self.page

        except DataAccessError as e:
            if generation != self._generation:
                self.log.info("Discarded stale load failure", generation=generation)
                return self.page
            self.error = e.message
            self.log.error(
                "Load failed, keeping previous page",
                error=e.message,
                error_type=type(e).__name__,
                page_index=self.page.page_index,
            )
            return self.page

        finally:
            self._finish(generation)

        self.error = None
        self.log.info(
            "View loaded",
            generation=generation,
            items=len(page.items),
            total_items=page.total_items,
            page_index=page.page_index,
            total_pages=page.total_pages,
            filtered=bool(self.filter_text.strip()),
        )
        return page

    async def refresh(self) -> Page:
        return await self.load()

    async def search(self, text: str) -> Page:
        return await self.load(text)

    async def set_page(self, index: int) -> Page:
        """
        Move to page ``index``; out-of-range indexes leave the state untouched.

        Locally paginated views re-slice without fetching. Server paginated
        views re-slice the server rows already held when they cover the page;
        otherwise they fetch the server page through the ``next``/``previous``
        cursor when it is adjacent, or by page number.
        """
        if index < 1 or index > self.page.total_pages or index == self.page.page_index:
            self.log.debug(
                "Ignoring page change", requested=index, total_pages=self.page.total_pages
            )
            return self.page

        if not self._server_backed:
            self.page = paginate(self.records, index, self.page_size)
            return self.page

        if self._window.covers((index - 1) * self.page_size, self.page_size):
            return self._apply_server_page(self._window, index)

        generation = self._begin()
        try:
            window, index = await self._run(
                generation, self._collect_server_page(index, window=self._window)
            )
        except StaleLoadError as e:
            self.log.info("Discarded stale page", generation=e.generation, current=e.current)
            return self.page
        except DataAccessError as e:
            if generation == self._generation:
                self.error = e.message
                self.log.error("Page fetch failed", error=e.message, requested=index)
            return self.page
        finally:
            self._finish(generation)

        self.error = None
        return self._apply_server_page(window, index)

    async def next_page(self) -> Page:
        return await self.set_page(self.page.page_index + 1)

    async def previous_page(self) -> Page:
        return await self.set_page(self.page.page_index - 1)

    async def mutate(
        self,
        op: Union[WriteOperation, str],
        resource: Resource,
        attachments: Sequence[Attachment] = (),
    ) -> Page:
        """
        Write ``resource`` then reload everything.

        Raises:
            ValidationError: required fields are missing; nothing is sent
            ServerError, NetworkError: the write failed; nothing is reloaded
        """
        op = WriteOperation(op)
        definition = self.definition
        write_path = definition.write_collection_path(self.session)

        if op == WriteOperation.CREATE:
            definition.validate(resource)
            await self.client.post(
                write_path,
                definition.payload(resource),
                attachments=attachments,
                as_form=definition.form_writes,
            )
        else:
            resource_id = resource.get(definition.id_field)
            if resource_id is None:
                raise ValidationError(
                    f"Cannot {op.value} a record without {definition.id_field}",
                    missing_fields=[definition.id_field],
                )
            item_path = endpoints.item(write_path, resource_id)

            if op == WriteOperation.UPDATE:
                definition.validate(resource, partial=not definition.replace_on_update)
                send = self.client.put if definition.replace_on_update else self.client.patch
                await send(
                    item_path,
                    definition.payload(resource),
                    attachments=attachments,
                    as_form=definition.form_writes,
                )
            else:
                await self.client.delete(item_path)

        self.log.info(
            "Resource written",
            operation=op.value,
            resource_id=resource.get(definition.id_field),
            attachments=len(attachments),
        )
        return await self.load()

    async def run_action(self, action: Action) -> Page:
        """Run an arbitrary write against the API, then reload everything."""
        await action(self.client)
        return await self.load()

    def find(self, resource_id: Any) -> Optional[Resource]:
        """Look up a record of the current load by id."""
        for record in self.records:
            if record.get(self.definition.id_field) == resource_id:
                return record
        return None

    def snapshot(self) -> Dict[str, Any]:
        """Plain dict of the current state, for logging and the CLI."""
        return {
            "view": self.definition.name,
            "generation": self._generation,
            "filter": self.filter_text,
            "page_index": self.page.page_index,
            "total_pages": self.page.total_pages,
            "total_items": self.page.total_items,
            "error": self.error,
            "loading": self.loading,
        }
