"""
Tests for FundingLedger and allocate_pro_rata.

Runs against a real (file-backed SQLite) database.  Tests cover:
- invest: partial → full funding, cap refusal, status and input checks
- concurrent investments never overshoot the target
- progress and investor portfolio (expected yield)
- settle: Repaid / Defaulted payouts sum to the settled amount
- allocate_pro_rata: largest-remainder rounding
"""

import asyncio

import pytest

from tradefin.core.exceptions import (
    FundingCapExceededError,
    InvalidInputError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundException,
)
from tradefin.models.investment import Investment
from tradefin.models.invoice import Invoice, InvoiceStatus
from tradefin.repositories.investment_repo import InvestmentRepository
from tradefin.repositories.invoice_repo import InvoiceRepository
from tradefin.schemas.investment import SettlementOutcome
from tradefin.services.funding_service import allocate_pro_rata
from tradefin.services.risk_engine import expected_yield

from .conftest import UNIT, funded_invoice, submitted_invoice, verified_invoice

S = InvoiceStatus


async def assert_ledger_consistent(lifecycle, invoice_id: int) -> int:
    """The investment rows add up to the invoice's funding, which never exceeds its target."""
    async with lifecycle.session() as db:
        invoice = await InvoiceRepository(Invoice, db).get(invoice_id)
        ledger_total = await InvestmentRepository(Investment, db).sum_for_invoice(invoice_id)
    assert 0 <= invoice.current_funding <= invoice.target_funding
    assert ledger_total == invoice.current_funding
    return ledger_total


# ────────────────────────────────────────────────────────────────────────────
# allocate_pro_rata
# ────────────────────────────────────────────────────────────────────────────


class TestAllocateProRata:
    """Tests for the largest-remainder split."""

    def test_exact_split(self):
        assert allocate_pro_rata(90, [60, 30]) == [60, 30]

    def test_leftover_goes_to_largest_remainder(self):
        # exact shares 33.33 / 66.67 → floors 33 / 66, one unit left
        assert allocate_pro_rata(100, [1, 2]) == [33, 67]

    def test_ties_go_to_earlier_weight(self):
        assert allocate_pro_rata(10, [1, 1, 1]) == [4, 3, 3]

    @pytest.mark.parametrize(
        "total, weights",
        [(1, [7, 11, 13]), (999_999, [3, 3, 3, 1]), (95_000 * UNIT, [60_000 * UNIT, 30_000 * UNIT])],
    )
    def test_always_sums_to_total(self, total, weights):
        shares = allocate_pro_rata(total, weights)
        assert sum(shares) == total
        assert all(s >= 0 for s in shares)

    def test_zero_weights(self):
        assert allocate_pro_rata(100, [0, 0]) == [0, 0]

    def test_empty(self):
        assert allocate_pro_rata(0, []) == []

    def test_negative_inputs_rejected(self):
        with pytest.raises(InvalidInputError):
            allocate_pro_rata(-1, [1])
        with pytest.raises(InvalidInputError):
            allocate_pro_rata(1, [1, -1])


# ────────────────────────────────────────────────────────────────────────────
# invest
# ────────────────────────────────────────────────────────────────────────────


class TestInvest:
    """Tests for FundingLedger.invest."""

    @pytest.mark.asyncio
    async def test_partial_then_full_then_capped(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        assert invoice.target_funding == 90_000 * UNIT

        first = await ledger.invest(invoice.id, "0xInvestorA", 60_000 * UNIT)
        assert await assert_ledger_consistent(lifecycle, invoice.id) == 60_000 * UNIT
        assert first.share_basis_points == 6_666
        assert (await lifecycle.get_invoice(invoice.id)).status == S.PARTIALLY_FUNDED

        await ledger.invest(invoice.id, "0xInvestorB", 30_000 * UNIT)
        stored = await lifecycle.get_invoice(invoice.id)
        assert stored.status == S.FULLY_FUNDED
        assert stored.current_funding == 90_000 * UNIT
        assert await assert_ledger_consistent(lifecycle, invoice.id) == 90_000 * UNIT

        # FullyFunded is no longer investable
        with pytest.raises(InvalidStateError):
            await ledger.invest(invoice.id, "0xInvestorC", 1_000 * UNIT)
        await assert_ledger_consistent(lifecycle, invoice.id)

    @pytest.mark.asyncio
    async def test_over_remaining_refused_whole(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 85_000 * UNIT)

        with pytest.raises(FundingCapExceededError) as exc_info:
            await ledger.invest(invoice.id, "0xInvestorB", 10_000 * UNIT)

        assert exc_info.value.status_code == 409
        assert exc_info.value.remaining == 5_000 * UNIT
        stored = await lifecycle.get_invoice(invoice.id)
        assert stored.current_funding == 85_000 * UNIT
        assert len(await ledger.get_investments(invoice.id)) == 1
        assert await assert_ledger_consistent(lifecycle, invoice.id) == 85_000 * UNIT

    @pytest.mark.asyncio
    async def test_first_investment_above_target(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        with pytest.raises(FundingCapExceededError):
            await ledger.invest(invoice.id, "0xInvestorA", 90_000 * UNIT + 1)
        assert await assert_ledger_consistent(lifecycle, invoice.id) == 0
        assert (await lifecycle.get_invoice(invoice.id)).status == S.VERIFIED

    @pytest.mark.asyncio
    async def test_not_verified(self, lifecycle, ledger):
        invoice = await submitted_invoice(lifecycle)
        with pytest.raises(InvalidStateError, match="not open for investment"):
            await ledger.invest(invoice.id, "0xInvestorA", 1_000 * UNIT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    async def test_bad_amount(self, lifecycle, coordinator, ledger, amount):
        invoice = await verified_invoice(lifecycle, coordinator)
        with pytest.raises(InvalidInputError):
            await ledger.invest(invoice.id, "0xInvestorA", amount)

    @pytest.mark.asyncio
    async def test_blank_investor(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        with pytest.raises(InvalidInputError):
            await ledger.invest(invoice.id, "   ", 1_000 * UNIT)

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, ledger):
        with pytest.raises(NotFoundException):
            await ledger.invest(999, "0xInvestorA", 1_000 * UNIT)

    @pytest.mark.asyncio
    async def test_concurrent_investments_never_overshoot(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)

        results = await asyncio.gather(
            *(ledger.invest(invoice.id, f"0xInvestor{i}", 20_000 * UNIT) for i in range(6)),
            return_exceptions=True,
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(accepted) == 4
        assert all(isinstance(r, FundingCapExceededError) for r in refused)

        stored = await lifecycle.get_invoice(invoice.id)
        assert stored.current_funding == 80_000 * UNIT
        assert stored.status == S.PARTIALLY_FUNDED
        investments = await ledger.get_investments(invoice.id)
        assert sum(i.amount for i in investments) == stored.current_funding
        assert await assert_ledger_consistent(lifecycle, invoice.id) == 80_000 * UNIT


# ────────────────────────────────────────────────────────────────────────────
# Queries
# ────────────────────────────────────────────────────────────────────────────


class TestQueries:
    """Tests for progress, get_investments and get_investments_by_investor."""

    @pytest.mark.asyncio
    async def test_progress(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 40_000 * UNIT)
        await ledger.invest(invoice.id, "0xInvestorA", 20_000 * UNIT)

        progress = await ledger.progress(invoice.id)

        assert progress.current_funding == 60_000 * UNIT
        assert progress.remaining == 30_000 * UNIT
        assert progress.percent == 66.67
        assert progress.investor_count == 1

    @pytest.mark.asyncio
    async def test_progress_unknown_invoice(self, ledger):
        with pytest.raises(NotFoundException):
            await ledger.progress(999)

    @pytest.mark.asyncio
    async def test_investments_in_acceptance_order(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 10_000 * UNIT)
        await ledger.invest(invoice.id, "0xInvestorB", 20_000 * UNIT)

        investments = await ledger.get_investments(invoice.id)
        assert [i.investor for i in investments] == ["0xInvestorA", "0xInvestorB"]

        page = await ledger.get_investments(invoice.id, skip=1, limit=1)
        assert [i.investor for i in page] == ["0xInvestorB"]

    @pytest.mark.asyncio
    async def test_portfolio_expected_yield(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 60_000 * UNIT)

        portfolio = await ledger.get_investments_by_investor("0xInvestorA")

        assert len(portfolio) == 1
        entry = portfolio[0]
        assert entry.invoice_id == invoice.id
        assert entry.apr_basis_points == 1_280
        assert entry.tenor_days == 45
        assert entry.expected_yield == expected_yield(60_000 * UNIT, 1_280, 45)

    @pytest.mark.asyncio
    async def test_portfolio_unknown_investor(self, ledger):
        assert await ledger.get_investments_by_investor("0xNobody") == []


# ────────────────────────────────────────────────────────────────────────────
# settle / payouts
# ────────────────────────────────────────────────────────────────────────────


class TestSettle:
    """Tests for FundingLedger.settle and FundingLedger.payouts."""

    @pytest.mark.asyncio
    async def test_repaid_distributes_pro_rata(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)

        result = await ledger.settle(invoice.id, SettlementOutcome.REPAID, 95_000 * UNIT)

        assert result.outcome == SettlementOutcome.REPAID
        assert sum(p.payout for p in result.payouts) == 95_000 * UNIT
        assert [p.investor for p in result.payouts] == ["0xInvestorA", "0xInvestorB"]
        # the leftover unit goes to the larger remainder (B: .67 vs A: .33)
        assert [p.payout for p in result.payouts] == [63_333_333_333, 31_666_666_667]
        assert all(p.loss == 0 for p in result.payouts)

        stored = await lifecycle.get_invoice(invoice.id)
        assert stored.status == S.REPAID
        assert stored.settled_amount == 95_000 * UNIT
        assert await ledger.payouts(invoice.id) == result.payouts

    @pytest.mark.asyncio
    async def test_defaulted_partial_recovery(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)

        result = await ledger.settle(invoice.id, SettlementOutcome.DEFAULTED, 45_000 * UNIT)

        assert [p.payout for p in result.payouts] == [30_000 * UNIT, 15_000 * UNIT]
        assert [p.loss for p in result.payouts] == [30_000 * UNIT, 15_000 * UNIT]
        assert (await lifecycle.get_invoice(invoice.id)).status == S.DEFAULTED

    @pytest.mark.asyncio
    async def test_defaulted_nothing_recovered(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)
        result = await ledger.settle(invoice.id, SettlementOutcome.DEFAULTED, 0)
        assert [p.payout for p in result.payouts] == [0, 0]

    @pytest.mark.asyncio
    async def test_repaid_below_principal_refused(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)

        with pytest.raises(InvalidInputError, match="principal"):
            await ledger.settle(invoice.id, SettlementOutcome.REPAID, 89_000 * UNIT)
        assert (await lifecycle.get_invoice(invoice.id)).status == S.FUNDED

    @pytest.mark.asyncio
    async def test_settle_before_disbursement_refused(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 90_000 * UNIT)

        with pytest.raises(InvalidTransitionError):
            await ledger.settle(invoice.id, SettlementOutcome.REPAID, 95_000 * UNIT)
        assert (await lifecycle.get_invoice(invoice.id)).status == S.FULLY_FUNDED

    @pytest.mark.asyncio
    async def test_default_before_disbursement_refused(self, lifecycle, coordinator, ledger):
        invoice = await verified_invoice(lifecycle, coordinator)
        await ledger.invest(invoice.id, "0xInvestorA", 90_000 * UNIT)

        with pytest.raises(InvalidTransitionError, match="FullyFunded"):
            await ledger.settle(invoice.id, SettlementOutcome.DEFAULTED, 0)
        stored = await lifecycle.get_invoice(invoice.id)
        assert stored.status == S.FULLY_FUNDED
        assert stored.settled_amount is None

    @pytest.mark.asyncio
    async def test_settle_twice_refused(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)
        await ledger.settle(invoice.id, SettlementOutcome.REPAID, 95_000 * UNIT)

        with pytest.raises(InvalidTransitionError):
            await ledger.settle(invoice.id, SettlementOutcome.DEFAULTED, 0)
        assert (await lifecycle.get_invoice(invoice.id)).settled_amount == 95_000 * UNIT

    @pytest.mark.asyncio
    async def test_negative_recovery_refused(self, ledger):
        with pytest.raises(InvalidInputError):
            await ledger.settle(1, SettlementOutcome.DEFAULTED, -1)

    @pytest.mark.asyncio
    async def test_payouts_before_settlement(self, lifecycle, coordinator, ledger):
        invoice = await funded_invoice(lifecycle, coordinator, ledger)
        with pytest.raises(InvalidStateError, match="not settled"):
            await ledger.payouts(invoice.id)
