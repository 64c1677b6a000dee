"""
Invoice repository — data-access layer for the ``invoices`` table.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.future import select

from tradefin.models.invoice import Invoice, InvoiceStatus
from tradefin.repositories.base import BaseRepository


class InvoiceRepository(BaseRepository[Invoice]):
    """Concrete repository for :class:`Invoice` entities."""

    async def list_invoices(
        self,
        status: Optional[InvoiceStatus] = None,
        supplier: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        """Return invoices (newest id first), optionally filtered."""
        stmt = select(self.model)
        if status is not None:
            stmt = stmt.where(self.model.status == status)
        if supplier is not None:
            stmt = stmt.where(self.model.supplier == supplier)
        stmt = stmt.order_by(self.model.id.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def ids_verifying_started_before(self, cutoff: datetime) -> List[int]:
        """Ids of Verifying invoices whose verification started at or before ``cutoff``."""
        stmt = (
            select(self.model.id)
            .where(self.model.status == InvoiceStatus.VERIFYING)
            .where(self.model.verification_started_at <= cutoff)
            .order_by(self.model.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def ids_due_before(self, status: InvoiceStatus, cutoff: datetime) -> List[int]:
        """Ids of invoices in ``status`` whose due date is earlier than ``cutoff``."""
        stmt = (
            select(self.model.id)
            .where(self.model.status == status)
            .where(self.model.due_date < cutoff)
            .order_by(self.model.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[InvoiceStatus, int]:
        """Number of invoices in each status (statuses with no invoices omitted)."""
        stmt = select(self.model.status, func.count()).group_by(self.model.status)
        result = await self.db.execute(stmt)
        return {status: count for status, count in result.all()}

    async def total_funding(self) -> int:
        """Sum of ``current_funding`` across all invoices."""
        stmt = select(func.coalesce(func.sum(self.model.current_funding), 0))
        result = await self.db.execute(stmt)
        return int(result.scalar_one())
