"""
Verification API endpoints.

- POST  /invoices/{invoice_id}/verification         — Start verification (202)
- POST  /invoices/{invoice_id}/verification/result  — Oracle callback with the verdict
- GET   /invoices/{invoice_id}/verification         — The committed assessment
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from tradefin.api.deps import get_coordinator
from tradefin.core.config import settings
from tradefin.schemas.common import ErrorResponse
from tradefin.schemas.invoice import InvoiceResponse
from tradefin.schemas.verification import OracleResponse, VerificationResultResponse
from tradefin.services.verification_service import VerificationCoordinator

router = APIRouter()


def _check_oracle_key(x_api_key: Optional[str] = Header(None)) -> None:
    """When ``ORACLE_API_KEY`` is configured, callbacks must present it."""
    if settings.ORACLE_API_KEY and x_api_key != settings.ORACLE_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key")


@router.post(
    "/invoices/{invoice_id}/verification",
    response_model=InvoiceResponse,
    status_code=202,
    summary="Start verification",
    description=(
        "Moves a *Submitted* invoice to *Verifying* and asks the oracle. "
        "Returns immediately; the outcome arrives asynchronously."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Invoice is not Submitted"},
    },
)
async def start_verification(
    invoice_id: int,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> InvoiceResponse:
    return await coordinator.start_verification(invoice_id)


@router.post(
    "/invoices/{invoice_id}/verification/result",
    response_model=InvoiceResponse,
    summary="Deliver the oracle verdict",
    description="Commits the risk assessment and moves the invoice to *Verified* or *Rejected*.",
    dependencies=[Depends(_check_oracle_key)],
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Verification not pending"},
        503: {"model": ErrorResponse, "description": "Market data unavailable"},
    },
)
async def complete_verification(
    invoice_id: int,
    result: OracleResponse,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> InvoiceResponse:
    return await coordinator.complete_verification(invoice_id, result)


@router.get(
    "/invoices/{invoice_id}/verification",
    response_model=VerificationResultResponse,
    summary="Get the verification result",
    responses={404: {"model": ErrorResponse, "description": "No committed assessment"}},
)
async def get_verification(
    invoice_id: int,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> VerificationResultResponse:
    return await coordinator.get_verification(invoice_id)
