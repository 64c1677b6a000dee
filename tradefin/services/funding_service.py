"""
Funding ledger — investments, funding caps, progress and settlement payouts.

Every investment is applied inside the invoice's unit of work: the row is
re-read ``FOR UPDATE`` under the per-invoice lock, the cap is checked
against the current figure, and the Investment row and the funding
increment are committed together.  Concurrent investments are therefore
applied one at a time and can never push ``current_funding`` past
``target_funding``; a request that does not fit is refused whole.

Payouts are computed, not stored: they follow from the immutable
investments and the recorded ``settled_amount``.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from tradefin.core.clock import as_utc, utcnow
from tradefin.core.exceptions import (
    FundingCapExceededError,
    InvalidInputError,
    InvalidStateError,
    NotFoundException,
)
from tradefin.models.investment import Investment
from tradefin.models.invoice import Invoice, InvoiceStatus
from tradefin.repositories.investment_repo import InvestmentRepository
from tradefin.repositories.invoice_repo import InvoiceRepository
from tradefin.schemas.investment import (
    FundingProgress,
    InvestmentResponse,
    PayoutShare,
    PortfolioEntry,
    SettlementOutcome,
    SettlementResponse,
)
from tradefin.services.lifecycle import InvoiceLifecycle
from tradefin.services.risk_engine import expected_yield, tenor_days

logger = logging.getLogger(__name__)

_INVESTABLE = (InvoiceStatus.VERIFIED, InvoiceStatus.PARTIALLY_FUNDED)
_SETTLED = (InvoiceStatus.REPAID, InvoiceStatus.DEFAULTED)


def allocate_pro_rata(total: int, weights: Sequence[int]) -> List[int]:
    """
    Split ``total`` in proportion to ``weights`` using integer arithmetic.

    Largest-remainder method: everyone gets the floor of their exact share,
    then the units left over go to the largest fractional remainders (ties
    to the earlier weight).  The result always sums to ``total``.
    """
    if total < 0 or any(w < 0 for w in weights):
        raise InvalidInputError("allocation inputs must be non-negative")
    weight_sum = sum(weights)
    if weight_sum == 0:
        return [0] * len(weights)

    shares = [total * w // weight_sum for w in weights]
    remainders = [total * w % weight_sum for w in weights]
    leftover = total - sum(shares)
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        shares[i] += 1
    return shares


class FundingLedger:
    """Investment and settlement operations on top of :class:`InvoiceLifecycle`."""

    def __init__(self, lifecycle: InvoiceLifecycle):
        self._lifecycle = lifecycle

    # ── Queries ──

    async def progress(self, invoice_id: int) -> FundingProgress:
        """Funding figures of one invoice, read in a single snapshot."""
        async with self._lifecycle.session() as db:
            invoice = await self._get_invoice(db, invoice_id)
            investor_count = await InvestmentRepository(Investment, db).count_investors(
                invoice_id
            )
        return FundingProgress(
            invoice_id=invoice.id,
            current_funding=invoice.current_funding,
            target_funding=invoice.target_funding,
            remaining=invoice.remaining_funding,
            percent=round(invoice.current_funding * 100 / invoice.target_funding, 2),
            investor_count=investor_count,
        )

    async def get_investments(
        self, invoice_id: int, skip: int = 0, limit: int = 100
    ) -> List[Investment]:
        """Investments of one invoice in acceptance order."""
        async with self._lifecycle.session() as db:
            await self._get_invoice(db, invoice_id)
            return await InvestmentRepository(Investment, db).get_by_invoice(
                invoice_id, skip=skip, limit=limit
            )

    async def get_investments_by_investor(
        self, investor: str, skip: int = 0, limit: int = 100
    ) -> List[PortfolioEntry]:
        """
        One investor's portfolio: every investment with the simple-interest
        return it earns at the invoice's APR over the invoice's tenor.
        """
        async with self._lifecycle.session() as db:
            investments = await InvestmentRepository(Investment, db).get_by_investor(
                investor, skip=skip, limit=limit
            )
            invoice_repo = InvoiceRepository(Invoice, db)
            invoices: Dict[int, Invoice] = {}
            for investment in investments:
                if investment.invoice_id not in invoices:
                    invoices[investment.invoice_id] = await invoice_repo.get(
                        investment.invoice_id
                    )

        portfolio: List[PortfolioEntry] = []
        for investment in investments:
            invoice = invoices[investment.invoice_id]
            days = max(0, tenor_days(invoice.created_at, invoice.due_date))
            apr = invoice.apr_basis_points or 0
            portfolio.append(
                PortfolioEntry(
                    **InvestmentResponse.model_validate(investment).model_dump(),
                    apr_basis_points=invoice.apr_basis_points,
                    tenor_days=days,
                    expected_yield=expected_yield(investment.amount, apr, days),
                )
            )
        return portfolio

    async def payouts(self, invoice_id: int) -> List[PayoutShare]:
        """Per-investment payout of a settled invoice."""
        async with self._lifecycle.session() as db:
            invoice = await self._get_invoice(db, invoice_id)
            if invoice.status not in _SETTLED:
                raise InvalidStateError(
                    f"Invoice {invoice_id} is not settled (status '{invoice.status.value}')"
                )
            investments = await InvestmentRepository(Investment, db).get_by_invoice(
                invoice_id, limit=None
            )
        return self._shares(investments, invoice.settled_amount or 0)

    # ── Commands ──

    async def invest(
        self,
        invoice_id: int,
        investor: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Investment:
        """
        Accept ``amount`` from ``investor`` into ``invoice_id``.

        Raises :class:`InvalidInputError` for a non-positive amount,
        :class:`InvalidStateError` unless the invoice is Verified or
        PartiallyFunded, and :class:`FundingCapExceededError` when the amount
        exceeds what is left to raise.  Nothing is written on failure.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError(f"Investment amount must be a positive integer, got {amount!r}")
        investor = (investor or "").strip()
        if not investor:
            raise InvalidInputError("investor must not be blank")
        now = as_utc(now or utcnow())

        async with self._lifecycle.transaction(invoice_id) as uow:
            invoice = uow.invoice
            if invoice.status not in _INVESTABLE:
                logger.warning(
                    "Investment into invoice %s refused: status %s",
                    invoice_id,
                    invoice.status.value,
                    extra={"invoice_id": invoice_id, "investor": investor},
                )
                raise InvalidStateError(
                    f"Invoice {invoice_id} is not open for investment "
                    f"(status '{invoice.status.value}')"
                )
            remaining = invoice.remaining_funding
            if amount > remaining:
                logger.warning(
                    "Investment of %s into invoice %s refused: only %s remaining",
                    amount,
                    invoice_id,
                    remaining,
                    extra={"invoice_id": invoice_id, "investor": investor},
                )
                raise FundingCapExceededError(invoice_id, amount, remaining)

            investment = Investment(
                invoice_id=invoice_id,
                investor=investor,
                amount=amount,
                share_basis_points=amount * 10_000 // invoice.target_funding,
                created_at=now,
            )
            await uow.investments.add(investment)
            self._lifecycle.record_funding(invoice, amount)

        logger.info(
            "Investment %s: %s → invoice %s (%s, funding %s/%s)",
            investment.id,
            investor,
            invoice_id,
            amount,
            invoice.current_funding,
            invoice.target_funding,
            extra={"invoice_id": invoice_id, "investor": investor},
        )
        return investment

    async def settle(
        self,
        invoice_id: int,
        outcome: SettlementOutcome,
        amount_recovered: int,
        now: Optional[datetime] = None,
    ) -> SettlementResponse:
        """
        Funded → Repaid / Defaulted, recording the amount paid back.

        Only a Funded invoice settles.  A FullyFunded invoice has not been
        disbursed yet, and the status graph has no FullyFunded → Repaid or
        FullyFunded → Defaulted edge, so it is refused with
        :class:`InvalidTransitionError` and must go through
        ``InvoiceLifecycle.disburse`` first.

        A repayment must at least return the funded principal; anything less
        is a default with partial recovery.
        """
        if isinstance(amount_recovered, bool) or not isinstance(amount_recovered, int):
            raise InvalidInputError("amount_recovered must be an integer")
        if amount_recovered < 0:
            raise InvalidInputError("amount_recovered must not be negative")
        now = as_utc(now or utcnow())
        target = (
            InvoiceStatus.REPAID if outcome == SettlementOutcome.REPAID else InvoiceStatus.DEFAULTED
        )

        async with self._lifecycle.transaction(invoice_id) as uow:
            invoice = uow.invoice
            if (
                target == InvoiceStatus.REPAID
                and invoice.status == InvoiceStatus.FUNDED
                and amount_recovered < invoice.current_funding
            ):
                raise InvalidInputError(
                    f"Repayment of {amount_recovered} is below the funded principal "
                    f"{invoice.current_funding}; settle as Defaulted instead"
                )
            self._lifecycle.apply_transition(
                invoice, target, settled_amount=amount_recovered, settled_at=now
            )
            investments = await uow.investments.get_by_invoice(invoice_id, limit=None)

        shares = self._shares(investments, amount_recovered)
        logger.info(
            "Invoice %s settled as %s: %s distributed to %d investment(s)",
            invoice_id,
            outcome.value,
            amount_recovered,
            len(shares),
            extra={"invoice_id": invoice_id},
        )
        return SettlementResponse(
            invoice_id=invoice_id,
            outcome=outcome,
            settled_amount=amount_recovered,
            payouts=shares,
        )

    # ── Helpers ──

    @staticmethod
    async def _get_invoice(db, invoice_id: int) -> Invoice:
        invoice = await InvoiceRepository(Invoice, db).get(invoice_id)
        if invoice is None:
            raise NotFoundException("Invoice", invoice_id)
        return invoice

    @staticmethod
    def _shares(investments: Sequence[Investment], settled_amount: int) -> List[PayoutShare]:
        payouts = allocate_pro_rata(settled_amount, [i.amount for i in investments])
        return [
            PayoutShare(
                investment_id=inv.id,
                investor=inv.investor,
                invested=inv.amount,
                payout=payout,
                loss=max(0, inv.amount - payout),
            )
            for inv, payout in zip(investments, payouts)
        ]
