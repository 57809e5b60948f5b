"""
Data models and type definitions for the Residence Manager.

Provides type-safe data structures with validation for the values that flow
between the API client and the list views.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Resources are open records; their attributes vary per endpoint.
Resource = Dict[str, Any]


class UserRole(str, Enum):
    """Roles known to the building API."""

    ADMIN = "admin"
    RESIDENT = "resident"


class WriteOperation(str, Enum):
    """Write calls a view can issue against its collection."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PaginationMode(str, Enum):
    """Where page slicing happens."""

    LOCAL = "local"
    SERVER = "server"


class Session(BaseModel):
    """Signed-in user, passed explicitly to every client and view."""

    token: str = Field(..., min_length=1)
    user_id: Optional[int] = None
    resident_id: Optional[int] = None
    username: Optional[str] = None
    role: UserRole = UserRole.RESIDENT

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class Attachment(BaseModel):
    """A binary part of a multipart write (avatar, proof of payment)."""

    field: str
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class CollectionPage(BaseModel):
    """One response of a collection endpoint, normalized to the paginated envelope."""

    results: List[Resource] = Field(default_factory=list)
    next: Optional[str] = None
    previous: Optional[str] = None
    count: int = Field(default=0, ge=0)

    @classmethod
    def from_payload(cls, payload: Any) -> "CollectionPage":
        """Accept either a flat JSON array or a ``{results, next, previous, count}`` object."""
        if isinstance(payload, list):
            return cls(results=payload, count=len(payload))
        if isinstance(payload, dict) and "results" in payload:
            results = payload.get("results") or []
            return cls(
                results=results,
                next=payload.get("next"),
                previous=payload.get("previous"),
                count=payload.get("count", len(results)),
            )
        raise TypeError(f"Unsupported collection payload: {type(payload).__name__}")

    @property
    def is_paginated(self) -> bool:
        return self.next is not None or self.previous is not None


class Page(BaseModel):
    """The slice of records currently shown to the user."""

    items: List[Resource] = Field(default_factory=list)
    page_index: int = Field(default=1, ge=1)
    page_size: int = Field(default=5, gt=0)
    total_pages: int = Field(default=0, ge=0)
    total_items: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.page_index > max(self.total_pages, 1):
            raise ValueError(
                f"page_index {self.page_index} exceeds total_pages {self.total_pages}"
            )
        if self.total_pages == 0 and self.items:
            raise ValueError("An empty page set cannot carry items")
        return self

    @classmethod
    def empty(cls, page_size: int) -> "Page":
        return cls(page_size=page_size)

    @property
    def has_next(self) -> bool:
        return self.page_index < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page_index > 1


def count_pages(total_items: int, page_size: int) -> int:
    """Number of pages needed for ``total_items`` records."""
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    return math.ceil(total_items / page_size)
