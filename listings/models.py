"""Request models for listing calls."""

from pydantic import BaseModel, Field


class ListingEntry(BaseModel):
    """One entry of a bulk listing request."""
    token_id: int = Field(ge=0)
    price: int = Field(gt=0)
    duration: int = Field(gt=0)
    name: str = Field(default='', max_length=255)
    metadata: str = Field(default='', max_length=10000)
