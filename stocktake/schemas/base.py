"""
Base Schema Classes for Pydantic Models

Response schemas read from ORM rows and service result dataclasses alike,
so every one of them enables ``from_attributes``.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models or results.

    Usage:
        class RunResponse(BaseResponseSchema):
            run_id: UUID
            zone_id: UUID
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
    Base class for request bodies.

    Unknown fields are ignored so older counting devices keep working.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
