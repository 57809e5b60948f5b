"""
Residence Manager screens

View definitions for every list screen, keyed by name, and the factory that
turns one into a live view-model for a session.
"""

from typing import Any, Dict, Optional

from residence.core.config import ViewConfig
from residence.core.exceptions import ConfigurationError
from residence.core.models import Session
from residence.data.api_client import ApiClient
from residence.services.aggregation import AggregationViewModel, ViewDefinition

from . import admin, resident


def available_views(session: Session, apartment_id: Any = None) -> Dict[str, ViewDefinition]:
    """Views the session's role may open."""
    views = resident.views_for(session, apartment_id) if session.resident_id is not None else {}
    if session.is_admin:
        views = {**views, **admin.VIEWS}
    return views


def open_view(
    client: ApiClient,
    session: Session,
    name: str,
    config: Optional[ViewConfig] = None,
    apartment_id: Any = None,
) -> AggregationViewModel:
    """Create the view-model behind screen ``name``."""
    views = available_views(session, apartment_id)
    if name not in views:
        raise ConfigurationError(
            f"Unknown view '{name}' for role {session.role.value}",
            details={"available": sorted(views)},
        )
    config = config or ViewConfig()
    definition = views[name]
    return AggregationViewModel(
        client,
        session,
        definition,
        page_size=definition.page_size or config.page_size,
        max_concurrency=config.max_concurrency,
        fallback_label=config.fallback_label,
    )


__all__ = ["admin", "resident", "available_views", "open_view"]
