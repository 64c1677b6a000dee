"""
Funding API endpoints.

Scoped under invoices (full paths, mounted at the API-version root):
- GET   /invoices/{invoice_id}/investments  — Investments in acceptance order
- POST  /invoices/{invoice_id}/investments  — Invest in a verified invoice
- GET   /invoices/{invoice_id}/funding      — Funding progress
- POST  /invoices/{invoice_id}/settlement   — Record repayment or default
- GET   /invoices/{invoice_id}/payouts      — Payout shares of a settled invoice
- GET   /investors/{investor}/investments   — An investor's portfolio
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from tradefin.api.deps import get_ledger
from tradefin.schemas.common import ErrorResponse, ValidationErrorResponse
from tradefin.schemas.investment import (
    FundingProgress,
    InvestmentCreate,
    InvestmentResponse,
    PayoutShare,
    PortfolioEntry,
    SettlementRequest,
    SettlementResponse,
)
from tradefin.services.funding_service import FundingLedger

router = APIRouter()


@router.get(
    "/invoices/{invoice_id}/investments",
    response_model=List[InvestmentResponse],
    summary="List investments for an invoice",
    responses={404: {"model": ErrorResponse, "description": "Invoice not found"}},
)
async def list_investments(
    invoice_id: int,
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max records to return"),
    ledger: FundingLedger = Depends(get_ledger),
) -> List[InvestmentResponse]:
    return await ledger.get_investments(invoice_id, skip=skip, limit=limit)


@router.post(
    "/invoices/{invoice_id}/investments",
    response_model=InvestmentResponse,
    status_code=201,
    summary="Invest in an invoice",
    description=(
        "Accepted only while the invoice is *Verified* or *PartiallyFunded* and "
        "only if the amount fits in the remaining funding. Oversized requests "
        "are refused whole."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Not investable or cap exceeded"},
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def create_investment(
    invoice_id: int,
    investment: InvestmentCreate,
    ledger: FundingLedger = Depends(get_ledger),
) -> InvestmentResponse:
    return await ledger.invest(invoice_id, investment.investor, investment.amount)


@router.get(
    "/invoices/{invoice_id}/funding",
    response_model=FundingProgress,
    summary="Funding progress",
    responses={404: {"model": ErrorResponse, "description": "Invoice not found"}},
)
async def funding_progress(
    invoice_id: int,
    ledger: FundingLedger = Depends(get_ledger),
) -> FundingProgress:
    return await ledger.progress(invoice_id)


@router.post(
    "/invoices/{invoice_id}/settlement",
    response_model=SettlementResponse,
    summary="Settle a funded invoice",
    description="Funded → Repaid or Defaulted; returns each investor's payout.",
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Invoice is not Funded"},
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def settle_invoice(
    invoice_id: int,
    settlement: SettlementRequest,
    ledger: FundingLedger = Depends(get_ledger),
) -> SettlementResponse:
    return await ledger.settle(invoice_id, settlement.outcome, settlement.amount_recovered)


@router.get(
    "/invoices/{invoice_id}/payouts",
    response_model=List[PayoutShare],
    summary="Payout shares",
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Invoice not settled"},
    },
)
async def get_payouts(
    invoice_id: int,
    ledger: FundingLedger = Depends(get_ledger),
) -> List[PayoutShare]:
    return await ledger.payouts(invoice_id)


@router.get(
    "/investors/{investor}/investments",
    response_model=List[PortfolioEntry],
    summary="Investor portfolio",
    description="Every investment of ``investor`` with its expected yield at maturity.",
)
async def investor_portfolio(
    investor: str,
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max records to return"),
    ledger: FundingLedger = Depends(get_ledger),
) -> List[PortfolioEntry]:
    return await ledger.get_investments_by_investor(investor, skip=skip, limit=limit)
