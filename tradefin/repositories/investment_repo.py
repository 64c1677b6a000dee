"""
Investment repository — data-access layer for the ``investments`` table.
"""

from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.future import select

from tradefin.models.investment import Investment
from tradefin.repositories.base import BaseRepository


class InvestmentRepository(BaseRepository[Investment]):
    """Concrete repository for :class:`Investment` entities."""

    async def get_by_invoice(
        self, invoice_id: int, skip: int = 0, limit: Optional[int] = None
    ) -> List[Investment]:
        """
        Return the investments of one invoice in acceptance order.

        Ordering by primary key reproduces the order in which the
        investments passed the invoice's serialisation point.  ``limit=None``
        returns all of them.
        """
        stmt = (
            select(self.model)
            .where(self.model.invoice_id == invoice_id)
            .order_by(self.model.id)
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_by_investor(
        self, investor: str, skip: int = 0, limit: int = 100
    ) -> List[Investment]:
        """Return one investor's investments, most recent first."""
        stmt = (
            select(self.model)
            .where(self.model.investor == investor)
            .order_by(self.model.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def sum_for_invoice(self, invoice_id: int) -> int:
        """Total invested in ``invoice_id`` according to the ledger rows."""
        stmt = select(func.coalesce(func.sum(self.model.amount), 0)).where(
            self.model.invoice_id == invoice_id
        )
        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    async def count_investors(self, invoice_id: int) -> int:
        """Number of distinct investors in ``invoice_id``."""
        stmt = select(func.count(func.distinct(self.model.investor))).where(
            self.model.invoice_id == invoice_id
        )
        result = await self.db.execute(stmt)
        return int(result.scalar_one())
