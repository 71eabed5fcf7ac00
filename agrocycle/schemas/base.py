"""
Base Schema Classes for Pydantic Models

Response schemas that read from ORM rows inherit from BaseResponseSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas built from ORM models.

    Usage:
        class DeliveryResponse(BaseResponseSchema):
            id: UUID
            delivery_number: str
            order_id: UUID
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request bodies that create a record. Unknown fields are dropped."""
    model_config = ConfigDict(
        extra='ignore',
    )


class BaseUpdateSchema(BaseModel):
    """Partial updates; every field is optional."""
    model_config = ConfigDict(
        extra='ignore',
    )
