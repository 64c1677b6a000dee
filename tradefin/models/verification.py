"""
Verification record model.

The single committed risk assessment of an invoice, together with what the
oracle reported.  ``invoice_id`` is unique: a second assessment for the same
invoice is refused by the database as well as by the coordinator.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime
from sqlmodel import Field, SQLModel

from tradefin.core.clock import utcnow
from tradefin.models.invoice import CreditRating


class VerificationRecord(SQLModel, table=True):
    """SQLModel table for ``verification_records``."""

    __tablename__ = "verification_records"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoices.id", unique=True, index=True)
    is_valid: bool
    risk_score: int
    credit_rating: CreditRating
    apr_basis_points: int
    oracle_risk_score: Optional[int] = None
    details: List[str] = Field(default_factory=list, sa_type=JSON)
    verification_checks: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    used_fallback: bool = False
    verified_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    def __repr__(self) -> str:
        return (
            f"<VerificationRecord invoice={self.invoice_id} valid={self.is_valid} "
            f"score={self.risk_score} rating={self.credit_rating.value}>"
        )
