"""
Protocol statistics endpoint.

- GET  /stats  — Invoice counts per status and total funding raised
"""

from fastapi import APIRouter, Depends

from tradefin.api.deps import get_lifecycle
from tradefin.schemas.invoice import ProtocolStats
from tradefin.services.lifecycle import InvoiceLifecycle

router = APIRouter()


@router.get("", response_model=ProtocolStats, summary="Protocol statistics")
async def get_stats(
    lifecycle: InvoiceLifecycle = Depends(get_lifecycle),
) -> ProtocolStats:
    return await lifecycle.get_stats()
