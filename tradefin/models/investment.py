"""
Investment domain model.

One investor's contribution to one invoice.  Rows are append-only: they are
inserted in the same transaction that raises the invoice's
``current_funding`` and are never updated or deleted afterwards.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index
from sqlmodel import Field, Relationship, SQLModel

from tradefin.core.clock import utcnow

if TYPE_CHECKING:
    from tradefin.models.invoice import Invoice


class Investment(SQLModel, table=True):
    """
    SQLModel / SQLAlchemy table definition for investments.

    - ``ix_investments_invoice_id`` serves the per-invoice listing and the
      payout computation; ``investor`` is indexed for portfolio look-ups.
    - ``share_basis_points`` is frozen at acceptance time against the
      invoice's target, which itself never changes.
    """

    __tablename__ = "investments"  # type: ignore[assignment]

    __table_args__ = (
        Index("ix_investments_invoice_created", "invoice_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_investments_amount_positive"),
        CheckConstraint(
            "share_basis_points >= 0 AND share_basis_points <= 10000",
            name="ck_investments_share_range",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(
        foreign_key="invoices.id",
        index=True,
        ondelete="RESTRICT",
    )
    investor: str = Field(index=True, max_length=128)
    amount: int = Field(sa_type=BigInteger)
    share_basis_points: int
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    invoice: Optional["Invoice"] = Relationship(back_populates="investments")

    def __repr__(self) -> str:
        return (
            f"<Investment id={self.id} invoice={self.invoice_id} "
            f"investor={self.investor} amount={self.amount}>"
        )
