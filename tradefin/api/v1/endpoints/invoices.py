"""
Invoice API endpoints.

- POST  /invoices                            — Submit a new invoice
- GET   /invoices                            — List invoices (filter by status / supplier)
- GET   /invoices/{invoice_id}               — Get one invoice
- POST  /invoices/{invoice_id}/disbursement  — Mark the raised funds as paid out
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from tradefin.api.deps import get_lifecycle
from tradefin.models.invoice import InvoiceStatus
from tradefin.schemas.common import ErrorResponse, ValidationErrorResponse
from tradefin.schemas.invoice import InvoiceCreate, InvoiceResponse
from tradefin.services.lifecycle import InvoiceLifecycle

router = APIRouter()


@router.get(
    "",
    response_model=List[InvoiceResponse],
    summary="List invoices",
    description="Newest first. Optionally filter by ``status`` and ``supplier``.",
)
async def list_invoices(
    status: Optional[InvoiceStatus] = Query(None, description="Only invoices in this status"),
    supplier: Optional[str] = Query(None, description="Only invoices of this supplier"),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max records to return"),
    lifecycle: InvoiceLifecycle = Depends(get_lifecycle),
) -> List[InvoiceResponse]:
    return await lifecycle.list_invoices(status=status, supplier=supplier, skip=skip, limit=limit)


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=201,
    summary="Submit an invoice",
    description=(
        "Registers a trade invoice in *Submitted* status. The funding target "
        "is derived from the face value; the due date must leave at least the "
        "minimum tenor."
    ),
    responses={
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def submit_invoice(
    invoice: InvoiceCreate,
    lifecycle: InvoiceLifecycle = Depends(get_lifecycle),
) -> InvoiceResponse:
    return await lifecycle.submit_invoice(invoice)


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get an invoice",
    responses={404: {"model": ErrorResponse, "description": "Invoice not found"}},
)
async def get_invoice(
    invoice_id: int,
    lifecycle: InvoiceLifecycle = Depends(get_lifecycle),
) -> InvoiceResponse:
    return await lifecycle.get_invoice(invoice_id)


@router.post(
    "/{invoice_id}/disbursement",
    response_model=InvoiceResponse,
    summary="Disburse a fully funded invoice",
    description="FullyFunded → Funded, once the raised funds have reached the supplier.",
    responses={
        404: {"model": ErrorResponse, "description": "Invoice not found"},
        409: {"model": ErrorResponse, "description": "Invoice is not FullyFunded"},
    },
)
async def disburse_invoice(
    invoice_id: int,
    lifecycle: InvoiceLifecycle = Depends(get_lifecycle),
) -> InvoiceResponse:
    return await lifecycle.disburse(invoice_id)
