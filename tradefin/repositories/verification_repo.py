"""
Verification record repository — data-access layer for ``verification_records``.
"""

from typing import Optional

from sqlalchemy.future import select

from tradefin.models.verification import VerificationRecord
from tradefin.repositories.base import BaseRepository


class VerificationRepository(BaseRepository[VerificationRecord]):
    """Concrete repository for :class:`VerificationRecord` entities."""

    async def get_by_invoice(self, invoice_id: int) -> Optional[VerificationRecord]:
        """Return the committed assessment of ``invoice_id``, if any."""
        stmt = select(self.model).where(self.model.invoice_id == invoice_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()
