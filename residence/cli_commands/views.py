"""
CLI commands for browsing list views.

Renders the page a screen would show as a rich table so views can be checked
against a live API from the terminal.
"""

import asyncio
import sys
from typing import Any, Optional

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from residence.core.config import Settings, get_settings, validate_required_settings
from residence.core.exceptions import ResidenceError
from residence.core.logging import bind_session
from residence.core.models import Page, Session, UserRole
from residence.data.api_client import ApiClient
from residence.screens import admin, available_views, open_view
from residence.services.aggregation import AggregationViewModel
from residence.services.filtering import resolve_path

logger = structlog.get_logger(__name__)

console = Console()


def build_session(settings: Settings) -> Session:
    """Session for the identity configured in the environment."""
    session = Session(
        token=settings.api.token or "",
        user_id=settings.session.user_id,
        resident_id=settings.session.resident_id,
        username=settings.session.username,
        role=UserRole(settings.session.role),
    )
    bind_session(session)
    return session


def _require_settings() -> Settings:
    try:
        missing = validate_required_settings()
    except ValueError as e:
        console.print(f"[red]Configuration Error:[/red] {escape(str(e))}")
        sys.exit(1)
    if missing:
        console.print("[red]Configuration Error:[/red]")
        for item in missing:
            console.print(f"  • Missing: {item}")
        sys.exit(1)
    return get_settings()


def _cell(record: Any, column: str) -> str:
    values = resolve_path(record, column)
    if not values:
        return "-"
    return ", ".join("-" if v is None else str(v) for v in values)


def render_page(view: AggregationViewModel, page: Page) -> Table:
    definition = view.definition
    columns = list(definition.columns) or sorted({k for r in page.items for k in r})

    title = definition.title or definition.name
    if view.filter_text:
        title = f"{title} (search: {view.filter_text})"
    caption = f"Page {page.page_index}/{max(page.total_pages, 1)}, {page.total_items} records"
    table = Table(title=title, caption=caption)

    for column in columns:
        table.add_column(column)
    for record in page.items:
        table.add_row(*(_cell(record, c) for c in columns))
    return table


async def _show(
    settings: Settings, name: str, search: Optional[str], page_index: int, apartment_id: Any
) -> int:
    session = build_session(settings)
    async with ApiClient(settings.api, session) as client:
        view = open_view(client, session, name, settings.views, apartment_id=apartment_id)
        page = await view.load(search or "")
        while page.page_index < page_index and page.has_next:
            page = await view.next_page()

        if view.error:
            console.print(f"[red]Could not load {name}:[/red] {view.error}")
            return 1

        console.print(render_page(view, page))
        return 0


@click.group()
def views():
    """Browse list views against the configured API."""
    pass


@views.command("list")
@click.option("--apartment-id", type=int, help="Apartment of the signed-in resident")
def list_views(apartment_id: Optional[int]):
    """List the views available to the configured role."""
    session = build_session(_require_settings())

    table = Table(title=f"Views for {session.role.value}")
    table.add_column("name")
    table.add_column("title")
    table.add_column("pagination")
    for name, definition in sorted(available_views(session, apartment_id).items()):
        table.add_row(name, definition.title, definition.mode.value)
    console.print(table)


@views.command()
@click.argument("name")
@click.option("--search", "-s", default="", help="Case-insensitive search text")
@click.option("--page", "page_index", type=int, default=1, help="Page to display (default: 1)")
@click.option("--apartment-id", type=int, help="Apartment of the signed-in resident")
def show(name: str, search: str, page_index: int, apartment_id: Optional[int]):
    """Load view NAME and print one page of it."""
    settings = _require_settings()
    try:
        code = asyncio.run(_show(settings, name, search, page_index, apartment_id))
    except ResidenceError as e:
        logger.error("View failed", view=name, error=e.message)
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    sys.exit(code)


async def _stats(settings: Settings) -> None:
    session = build_session(settings)
    async with ApiClient(settings.api, session) as client:
        stats = await admin.building_statistics(client)

    table = Table(title="Building statistics")
    table.add_column("metric")
    table.add_column("value", justify="right")
    table.add_row("apartments", str(stats.apartments))
    table.add_row("occupied", str(stats.occupied))
    table.add_row("vacant", str(stats.vacant))
    table.add_row("residents", str(stats.residents))
    console.print(table)


async def _survey(settings: Settings, survey_id: int) -> None:
    session = build_session(settings)
    async with ApiClient(settings.api, session) as client:
        results = await admin.survey_results(client, survey_id)

    title = results.survey.get("title") or f"Survey {survey_id}"
    console.print(f"[bold]{escape(str(title))}[/bold] ({results.responses} responses)")
    for result in results.questions:
        table = Table(title=str(result.question.get("text", "")))
        table.add_column("choice")
        table.add_column("count", justify="right")
        table.add_column("%", justify="right")
        for row in result.tally:
            table.add_row(str(row["choice"]), str(row["count"]), f"{row['percentage']:.2f}")
        console.print(table)


def _run_admin(name: str, work) -> None:
    try:
        asyncio.run(work)
    except ResidenceError as e:
        logger.error("Command failed", command=name, error=e.message)
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        sys.exit(1)


@views.command()
def stats():
    """Count occupied and vacant apartments and all residents."""
    _run_admin("stats", _stats(_require_settings()))


@views.command()
@click.argument("survey_id", type=int)
def survey(survey_id: int):
    """Tally the answers to survey SURVEY_ID per question."""
    _run_admin("survey", _survey(_require_settings(), survey_id))
