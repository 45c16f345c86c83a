"""Request models for signature settlement calls."""

from pydantic import BaseModel, Field


class SettlementEntry(BaseModel):
    """One trade of a bulk signature settlement."""
    contract: str
    token_id: int = Field(ge=0)
    seller: str
    price: int = Field(gt=0)
