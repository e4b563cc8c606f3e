"""
Shared base classes for the dispatch API schemas.

Responses are built from the service result dicts (or ORM rows), requests
from JSON bodies. Carrier-posted bodies keep whatever extra keys the carrier
sends.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """Response bodies; readable from ORM attributes as well as dicts."""
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request bodies we define. Unknown fields are dropped."""
    model_config = ConfigDict(
        extra='ignore',
    )


class CarrierPayloadSchema(BaseModel):
    """
    Bodies posted by carriers.

    Carriers send their own JSON shapes; unknown fields are kept and handed
    to the payload parsers via ``model_extra``.
    """
    model_config = ConfigDict(
        extra='allow',
    )
