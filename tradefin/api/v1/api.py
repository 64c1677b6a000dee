"""
V1 API router aggregation.

All versioned endpoint routers are mounted here; ``main.py`` mounts this
router at ``/api/v1``.
"""

from fastapi import APIRouter

from tradefin.api.v1.endpoints import investments, invoices, stats, verification

api_router = APIRouter()

api_router.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])

# Verification and funding routers define full paths (/invoices/{id}/...)
# and are mounted at the root of the v1 prefix.
api_router.include_router(verification.router, tags=["Verification"])
api_router.include_router(investments.router, tags=["Funding"])

api_router.include_router(stats.router, prefix="/stats", tags=["Stats"])
