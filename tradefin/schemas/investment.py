"""
Pydantic schemas for investments, funding progress and settlement payouts.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvestmentCreate(BaseModel):
    """Schema for ``POST /invoices/{invoice_id}/investments``."""

    investor: str = Field(..., min_length=1, max_length=128, examples=["0xInvestorA"])
    amount: int = Field(
        ..., gt=0, description="Amount in the smallest currency unit", examples=[60_000]
    )

    @field_validator("investor")
    @classmethod
    def investor_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("investor must not be blank")
        return v.strip()


class InvestmentResponse(BaseModel):
    """Schema returned by investment endpoints."""

    id: int
    invoice_id: int
    investor: str
    amount: int
    share_basis_points: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PortfolioEntry(InvestmentResponse):
    """An investment with the return it is expected to earn at maturity."""

    apr_basis_points: Optional[int] = None
    tenor_days: int
    expected_yield: int


class FundingProgress(BaseModel):
    """Read-only funding view of one invoice."""

    invoice_id: int
    current_funding: int
    target_funding: int
    remaining: int
    percent: float
    investor_count: int


class SettlementOutcome(str, Enum):
    """Terminal outcomes accepted by ``POST /invoices/{id}/settlement``."""

    REPAID = "Repaid"
    DEFAULTED = "Defaulted"


class SettlementRequest(BaseModel):
    """Schema for ``POST /invoices/{invoice_id}/settlement``."""

    outcome: SettlementOutcome
    amount_recovered: int = Field(
        ...,
        ge=0,
        description="Total repaid (Repaid) or recovered (Defaulted), smallest unit",
    )


class PayoutShare(BaseModel):
    """One investor's share of a settled invoice."""

    investment_id: int
    investor: str
    invested: int
    payout: int
    loss: int


class SettlementResponse(BaseModel):
    """Settlement outcome with the computed payout shares."""

    invoice_id: int
    outcome: SettlementOutcome
    settled_amount: int
    payouts: List[PayoutShare]
