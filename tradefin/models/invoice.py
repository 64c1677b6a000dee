"""
Invoice domain model.

Represents a trade receivable persisted in the ``invoices`` table.  The row
is never deleted: Repaid, Defaulted and Rejected are terminal states and the
record stays as the permanent history of the financing.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime
from sqlmodel import Field, Relationship, SQLModel

from tradefin.core.clock import utcnow

if TYPE_CHECKING:
    from tradefin.models.investment import Investment


class InvoiceStatus(str, Enum):
    """Lifecycle states of an invoice."""

    SUBMITTED = "Submitted"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    PARTIALLY_FUNDED = "PartiallyFunded"
    FULLY_FUNDED = "FullyFunded"
    FUNDED = "Funded"
    REPAID = "Repaid"
    DEFAULTED = "Defaulted"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.REPAID, InvoiceStatus.DEFAULTED, InvoiceStatus.REJECTED)


class CreditRating(str, Enum):
    """Ordinal rating derived from the risk score (best first)."""

    AAA = "AAA"
    AA = "AA"
    A = "A"
    BBB = "BBB"
    BB = "BB"
    B = "B"
    ERROR = "ERROR"


class Invoice(SQLModel, table=True):
    """
    SQLModel / SQLAlchemy table definition for invoices.

    Money columns are BIGINT amounts in the smallest currency unit.  The
    funding bounds and the supplier/buyer distinction are also enforced by
    CHECK constraints, so a bug that slips past the service layer still
    cannot persist an over-funded invoice.
    """

    __tablename__ = "invoices"  # type: ignore[assignment]

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
        CheckConstraint("supplier <> buyer", name="ck_invoices_distinct_parties"),
        CheckConstraint("target_funding > 0", name="ck_invoices_target_positive"),
        CheckConstraint(
            "current_funding >= 0 AND current_funding <= target_funding",
            name="ck_invoices_funding_within_target",
        ),
        CheckConstraint(
            "risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)",
            name="ck_invoices_risk_score_range",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier: str = Field(index=True, max_length=128)
    buyer: str = Field(index=True, max_length=128)
    amount: int = Field(sa_type=BigInteger)
    commodity: str = Field(max_length=128)
    supplier_country: str = Field(max_length=128)
    buyer_country: str = Field(max_length=128)
    exporter_name: str = Field(max_length=255)
    buyer_name: str = Field(max_length=255)
    due_date: datetime = Field(sa_type=DateTime(timezone=True))  # type: ignore[arg-type]
    document_hash: str = Field(max_length=255)

    status: InvoiceStatus = Field(default=InvoiceStatus.SUBMITTED, index=True)

    # ── Written once by the verification outcome ──
    risk_score: Optional[int] = None
    credit_rating: Optional[CreditRating] = None
    apr_basis_points: Optional[int] = None
    used_fallback: bool = False
    rejection_reason: Optional[str] = Field(default=None, max_length=1024)

    # ── Funding ──
    target_funding: int = Field(sa_type=BigInteger)
    current_funding: int = Field(default=0, sa_type=BigInteger)

    # ── Settlement ──
    settled_amount: Optional[int] = Field(default=None, sa_type=BigInteger)

    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
        index=True,
    )
    verification_started_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    verified_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    disbursed_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    settled_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )

    investments: List["Investment"] = Relationship(back_populates="invoice")

    @property
    def remaining_funding(self) -> int:
        return self.target_funding - self.current_funding

    def __repr__(self) -> str:
        return (
            f"<Invoice id={self.id} status={self.status.value} "
            f"funding={self.current_funding}/{self.target_funding}>"
        )
