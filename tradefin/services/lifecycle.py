"""
Invoice lifecycle — the status graph and the per-invoice unit of work.

This is the only module that writes ``Invoice.status``.  The verification
coordinator and the funding ledger report outcomes here
(:meth:`InvoiceLifecycle.apply_transition`,
:meth:`InvoiceLifecycle.record_funding`) and the graph decides whether the
change is legal::

    Submitted ─► Verifying ─► Verified ─► PartiallyFunded ─► FullyFunded ─► Funded ─► Repaid
                     │            └──────────────────────────────►┘                 └──► Defaulted
                     └──► Rejected

Transactions:
    :meth:`InvoiceLifecycle.transaction` serialises all state-changing work
    on one invoice: it holds the invoice's asyncio lock, opens a session,
    re-reads the row ``FOR UPDATE``, commits when the block succeeds and
    rolls back when it raises.  Failed operations therefore leave the
    invoice exactly as it was.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradefin.core.clock import as_utc, utcnow
from tradefin.core.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundException,
)
from tradefin.core.locks import KeyedLock, invoice_locks
from tradefin.core.policy import FundingPolicy
from tradefin.models.investment import Investment
from tradefin.models.invoice import Invoice, InvoiceStatus
from tradefin.models.verification import VerificationRecord
from tradefin.repositories.investment_repo import InvestmentRepository
from tradefin.repositories.invoice_repo import InvoiceRepository
from tradefin.repositories.verification_repo import VerificationRepository
from tradefin.schemas.invoice import InvoiceCreate, ProtocolStats

logger = logging.getLogger(__name__)

S = InvoiceStatus

_ALLOWED_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    S.SUBMITTED: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.VERIFIED, S.REJECTED}),
    S.VERIFIED: frozenset({S.PARTIALLY_FUNDED, S.FULLY_FUNDED}),
    S.PARTIALLY_FUNDED: frozenset({S.PARTIALLY_FUNDED, S.FULLY_FUNDED}),
    S.FULLY_FUNDED: frozenset({S.FUNDED}),
    S.FUNDED: frozenset({S.REPAID, S.DEFAULTED}),
}


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    """True when ``current → target`` is an edge of the lifecycle graph."""
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


class UnitOfWork:
    """
    One locked transaction on one invoice.

    ``invoice`` is the row loaded ``FOR UPDATE``; the repositories share the
    transaction's session.
    """

    def __init__(self, db: AsyncSession, invoice: Invoice):
        self.db = db
        self.invoice = invoice
        self.invoices = InvoiceRepository(Invoice, db)
        self.investments = InvestmentRepository(Investment, db)
        self.verifications = VerificationRepository(VerificationRecord, db)


class InvoiceLifecycle:
    """
    Owns the invoice state graph.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Source of sessions; one session per operation.
    policy : FundingPolicy
        Funding percentage, minimum tenor and default grace period.
    locks : KeyedLock
        Per-invoice lock registry (process-wide by default).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: Optional[FundingPolicy] = None,
        locks: KeyedLock = invoice_locks,
    ):
        self._session_factory = session_factory
        self.policy = policy or FundingPolicy()
        self._locks = locks

    # ── Transactions ──

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for read-only queries (no lock, no row lock)."""
        async with self._session_factory() as db:
            yield db

    @asynccontextmanager
    async def transaction(self, invoice_id: int) -> AsyncIterator[UnitOfWork]:
        """
        Exclusive, atomic unit of work on ``invoice_id``.

        Raises :class:`NotFoundException` if the invoice does not exist.
        """
        async with self._locks.hold(invoice_id):
            async with self._session_factory() as db:
                invoice = await InvoiceRepository(Invoice, db).get_for_update(invoice_id)
                if invoice is None:
                    raise NotFoundException("Invoice", invoice_id)
                try:
                    yield UnitOfWork(db, invoice)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

    # ── State changes (the only writers of Invoice.status) ──

    def apply_transition(self, invoice: Invoice, target: InvoiceStatus, **fields: Any) -> Invoice:
        """
        Move ``invoice`` to ``target`` and set ``fields`` alongside.

        Raises :class:`InvalidTransitionError` (nothing modified) when the
        edge is not in the graph.
        """
        current = invoice.status
        if not can_transition(current, target):
            logger.warning(
                "Rejected transition for invoice %s: %s → %s",
                invoice.id,
                current.value,
                target.value,
                extra={"invoice_id": invoice.id},
            )
            raise InvalidTransitionError(current, target)

        for name, value in fields.items():
            setattr(invoice, name, value)
        invoice.status = target
        if current != target:
            logger.info(
                "Invoice %s: %s → %s",
                invoice.id,
                current.value,
                target.value,
                extra={"invoice_id": invoice.id},
            )
        return invoice

    def record_funding(self, invoice: Invoice, amount: int) -> Invoice:
        """
        Book ``amount`` of accepted funding and move to PartiallyFunded or
        FullyFunded accordingly.  The caller has already checked the cap.
        """
        new_total = invoice.current_funding + amount
        target = (
            InvoiceStatus.FULLY_FUNDED
            if new_total == invoice.target_funding
            else InvoiceStatus.PARTIALLY_FUNDED
        )
        return self.apply_transition(invoice, target, current_funding=new_total)

    # ── Queries ──

    async def get_invoice(self, invoice_id: int) -> Invoice:
        async with self.session() as db:
            invoice = await InvoiceRepository(Invoice, db).get(invoice_id)
        if invoice is None:
            raise NotFoundException("Invoice", invoice_id)
        return invoice

    async def list_invoices(
        self,
        status: Optional[InvoiceStatus] = None,
        supplier: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        async with self.session() as db:
            return await InvoiceRepository(Invoice, db).list_invoices(
                status=status, supplier=supplier, skip=skip, limit=limit
            )

    async def get_stats(self) -> ProtocolStats:
        """Invoice counts per status and the total funding raised."""
        async with self.session() as db:
            repo = InvoiceRepository(Invoice, db)
            by_status = await repo.count_by_status()
            total_funding = await repo.total_funding()
        return ProtocolStats(
            total_invoices=sum(by_status.values()),
            by_status=by_status,
            total_funding=total_funding,
        )

    # ── Commands ──

    async def submit_invoice(
        self, invoice_in: InvoiceCreate, now: Optional[datetime] = None
    ) -> Invoice:
        """
        Persist a new invoice in ``Submitted`` with its funding target.

        The due date must lie more than ``min_tenor_days`` after submission.
        """
        now = as_utc(now or utcnow())
        due_date = as_utc(invoice_in.due_date)
        if invoice_in.supplier == invoice_in.buyer:
            raise InvalidInputError("supplier and buyer must be different parties")
        if due_date <= now + timedelta(days=self.policy.min_tenor_days):
            raise InvalidInputError(
                f"due_date must be more than {self.policy.min_tenor_days} days after submission"
            )
        target = self.policy.target_for(invoice_in.amount)
        if target <= 0:
            raise InvalidInputError(
                f"amount {invoice_in.amount} is too small to produce a funding target"
            )

        invoice = Invoice(
            **invoice_in.model_dump(exclude={"due_date"}),
            due_date=due_date,
            target_funding=target,
            created_at=now,
        )
        async with self.session() as db:
            repo = InvoiceRepository(Invoice, db)
            try:
                created = await repo.create(invoice)
            except IntegrityError as exc:
                await db.rollback()
                logger.warning("IntegrityError submitting invoice: %s", exc)
                raise InvalidInputError("Invoice violates a database constraint")
        logger.info(
            "Submitted invoice %s: %s → %s, amount %s, target %s",
            created.id,
            created.supplier,
            created.buyer,
            created.amount,
            created.target_funding,
            extra={"invoice_id": created.id},
        )
        return created

    async def disburse(self, invoice_id: int, now: Optional[datetime] = None) -> Invoice:
        """FullyFunded → Funded once the raised funds reach the supplier."""
        async with self.transaction(invoice_id) as uow:
            self.apply_transition(
                uow.invoice, InvoiceStatus.FUNDED, disbursed_at=as_utc(now or utcnow())
            )
        return uow.invoice

    async def default_overdue(self, now: Optional[datetime] = None) -> List[int]:
        """
        Mark every Funded invoice past ``due_date + default_grace_days`` as
        Defaulted with nothing recovered.  Returns the ids that changed.
        """
        now = as_utc(now or utcnow())
        cutoff = now - timedelta(days=self.policy.default_grace_days)
        async with self.session() as db:
            candidates = await InvoiceRepository(Invoice, db).ids_due_before(
                InvoiceStatus.FUNDED, cutoff
            )

        defaulted: List[int] = []
        for invoice_id in candidates:
            async with self.transaction(invoice_id) as uow:
                invoice = uow.invoice
                # Re-check under the lock: a settlement may have won the race.
                if invoice.status != InvoiceStatus.FUNDED or as_utc(invoice.due_date) >= cutoff:
                    continue
                self.apply_transition(
                    invoice, InvoiceStatus.DEFAULTED, settled_amount=0, settled_at=now
                )
                defaulted.append(invoice_id)
        if defaulted:
            logger.warning("Defaulted %d overdue invoice(s): %s", len(defaulted), defaulted)
        return defaulted
