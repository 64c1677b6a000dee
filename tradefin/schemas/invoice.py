"""
Pydantic schemas for invoice request / response serialisation.

Amounts are integers in the smallest currency unit (6 decimals by default).
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradefin.core.clock import as_utc
from tradefin.models.invoice import CreditRating, InvoiceStatus


class InvoiceCreate(BaseModel):
    """Schema for ``POST /invoices``."""

    supplier: str = Field(..., min_length=1, max_length=128, examples=["0xSupplierA"])
    buyer: str = Field(..., min_length=1, max_length=128, examples=["0xBuyerB"])
    amount: int = Field(
        ...,
        gt=0,
        description="Face value in the smallest currency unit",
        examples=[100_000_000_000],
    )
    commodity: str = Field(..., min_length=1, max_length=128, examples=["Coffee"])
    supplier_country: str = Field(..., min_length=1, max_length=128, examples=["Kenya"])
    buyer_country: str = Field(..., min_length=1, max_length=128, examples=["Germany"])
    exporter_name: str = Field(..., min_length=1, max_length=255)
    buyer_name: str = Field(..., min_length=1, max_length=255)
    due_date: datetime = Field(..., description="Maturity (ISO-8601); naive values are UTC")
    document_hash: str = Field(..., min_length=1, max_length=255)

    @field_validator(
        "supplier",
        "buyer",
        "commodity",
        "supplier_country",
        "buyer_country",
        "exporter_name",
        "buyer_name",
        "document_hash",
    )
    @classmethod
    def strip_not_blank(cls, v: str) -> str:
        """Reject whitespace-only values."""
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def parties_differ(self) -> "InvoiceCreate":
        if self.supplier == self.buyer:
            raise ValueError("supplier and buyer must be different parties")
        return self


class InvoiceResponse(BaseModel):
    """Schema returned by invoice endpoints."""

    id: int
    supplier: str
    buyer: str
    amount: int
    commodity: str
    supplier_country: str
    buyer_country: str
    exporter_name: str
    buyer_name: str
    due_date: datetime
    document_hash: str
    status: InvoiceStatus
    risk_score: Optional[int] = None
    credit_rating: Optional[CreditRating] = None
    apr_basis_points: Optional[int] = None
    used_fallback: bool = False
    rejection_reason: Optional[str] = None
    target_funding: int
    current_funding: int
    settled_amount: Optional[int] = None
    created_at: datetime
    verification_started_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ProtocolStats(BaseModel):
    """Aggregate figures for ``GET /stats``."""

    total_invoices: int
    by_status: Dict[InvoiceStatus, int]
    total_funding: int
