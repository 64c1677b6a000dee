"""
Database model registry.

Importing this module registers every table with ``SQLModel.metadata``;
``create_all()`` and :func:`init_models` rely on it.
"""

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import SQLModel

from tradefin.models.invoice import Invoice  # noqa: F401
from tradefin.models.investment import Investment  # noqa: F401
from tradefin.models.verification import VerificationRecord  # noqa: F401


async def init_models(engine: AsyncEngine) -> None:
    """Create any missing tables on ``engine``."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
