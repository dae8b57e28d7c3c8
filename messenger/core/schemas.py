"""
Base schemas for the API.
"""

from datetime import datetime
from uuid import UUID

from ninja import Schema


class BaseSchema(Schema):
    """
    Base schema with common fields.

    Provides standard fields for models inheriting from BaseModel.
    """

    id: UUID
    created: datetime


class CursorPageSchema(Schema):
    """
    Base schema for cursor-paginated responses.

    ``next_cursor`` is the id of the last item of the page, to be passed back
    as ``cursor`` to fetch the following page.
    """

    next_cursor: UUID | None = None
    has_more: bool = False


class CountSchema(Schema):
    """Schema for bare counter responses."""

    count: int
