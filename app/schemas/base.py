"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM rows MUST inherit from BaseResponseSchema.
"""

from datetime import datetime
from typing import Generic, List, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class ReturnRequestResponse(BaseResponseSchema):
            id: UUID
            status: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Serialize UUIDs as strings in JSON output
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.
    Unknown fields are ignored for forward compatibility.
    """
    model_config = ConfigDict(
        extra='ignore',
    )


T = TypeVar("T")


class PageResponse(BaseModel, Generic[T]):
    """0-based page of results."""
    content: List[T]
    total_elements: int
    total_pages: int
    page: int
    size: int

    @classmethod
    def build(cls, content: List[T], total: int, page: int, size: int) -> "PageResponse[T]":
        return cls(
            content=content,
            total_elements=total,
            total_pages=(total + size - 1) // size if total else 0,
            page=page,
            size=size,
        )
