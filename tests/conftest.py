"""
Shared pytest fixtures.

Tests run with ``USE_SQLITE=true``.  Service tests get a fresh file-backed
SQLite database per test (``tmp_path``) with real repositories and real
transactions; API tests replace the services with mocks through
``app.dependency_overrides``.  No network I/O anywhere.
"""

import os

os.environ.setdefault("USE_SQLITE", "true")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from tradefin.core.locks import KeyedLock  # noqa: E402
from tradefin.core.policy import FundingPolicy, RiskPolicy, VerificationPolicy  # noqa: E402
from tradefin.core.resilience import ALL_BREAKERS  # noqa: E402
from tradefin.db.base import init_models  # noqa: E402
from tradefin.db.session import build_engine, build_session_factory  # noqa: E402
from tradefin.models.investment import Investment  # noqa: E402
from tradefin.models.invoice import CreditRating, Invoice, InvoiceStatus  # noqa: E402
from tradefin.models.verification import VerificationRecord  # noqa: E402
from tradefin.schemas.invoice import InvoiceCreate  # noqa: E402
from tradefin.schemas.market import CommodityQuote, MarketSnapshot  # noqa: E402
from tradefin.schemas.verification import OracleResponse  # noqa: E402
from tradefin.services.funding_service import FundingLedger  # noqa: E402
from tradefin.services.lifecycle import InvoiceLifecycle  # noqa: E402
from tradefin.services.oracle import StaticMarketDataSource  # noqa: E402
from tradefin.services.risk_engine import RiskEngine  # noqa: E402
from tradefin.services.verification_service import VerificationCoordinator  # noqa: E402

# ────────────────────────────────────────────────────────────────────────────
# Constants & factory helpers
# ────────────────────────────────────────────────────────────────────────────

UNIT = 1_000_000  # 6-decimal fixed point
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
INVOICE_ID = 1


def make_invoice_create(**overrides) -> InvoiceCreate:
    """Valid submission payload: 100,000 units of coffee, Kenya → Germany, 45 days."""
    fields = dict(
        supplier="0xSupplier",
        buyer="0xBuyer",
        amount=100_000 * UNIT,
        commodity="Coffee",
        supplier_country="Kenya",
        buyer_country="Germany",
        exporter_name="Kenya Coffee Cooperative",
        buyer_name="Hamburg Roasters GmbH",
        due_date=NOW + timedelta(days=45),
        document_hash="QmDocumentHash",
    )
    fields.update(overrides)
    return InvoiceCreate(**fields)


def make_invoice(
    *,
    id: int = INVOICE_ID,
    status: InvoiceStatus = InvoiceStatus.SUBMITTED,
    amount: int = 100_000 * UNIT,
    current_funding: int = 0,
    created_at: Optional[datetime] = None,
    due_in_days: int = 45,
    **overrides,
) -> Invoice:
    """Invoice domain object (not persisted) with sensible defaults."""
    created = created_at or NOW
    fields = dict(
        id=id,
        supplier="0xSupplier",
        buyer="0xBuyer",
        amount=amount,
        commodity="Coffee",
        supplier_country="Kenya",
        buyer_country="Germany",
        exporter_name="Kenya Coffee Cooperative",
        buyer_name="Hamburg Roasters GmbH",
        due_date=created + timedelta(days=due_in_days),
        document_hash="QmDocumentHash",
        status=status,
        target_funding=amount * 9_000 // 10_000,
        current_funding=current_funding,
        created_at=created,
    )
    fields.update(overrides)
    return Invoice(**fields)


def make_investment(
    *,
    id: int = 1,
    invoice_id: int = INVOICE_ID,
    investor: str = "0xInvestorA",
    amount: int = 60_000 * UNIT,
    share_basis_points: int = 6_666,
) -> Investment:
    return Investment(
        id=id,
        invoice_id=invoice_id,
        investor=investor,
        amount=amount,
        share_basis_points=share_basis_points,
        created_at=NOW,
    )


def make_record(*, invoice_id: int = INVOICE_ID, **overrides) -> VerificationRecord:
    fields = dict(
        id=1,
        invoice_id=invoice_id,
        is_valid=True,
        risk_score=37,
        credit_rating=CreditRating.A,
        apr_basis_points=1_320,
        oracle_risk_score=29,
        details=["Document verification completed successfully"],
        verification_checks={"documentIntegrity": True},
        used_fallback=False,
        verified_at=NOW,
    )
    fields.update(overrides)
    return VerificationRecord(**fields)


def make_snapshot(*, as_of: Optional[datetime] = None, **overrides) -> MarketSnapshot:
    fields = dict(
        country_risk={"kenya": 12, "germany": 2},
        commodity_prices={"coffee": CommodityQuote(price=850_000, volatility_bps=300)},
        as_of=as_of or NOW,
        source="test",
    )
    fields.update(overrides)
    return MarketSnapshot(**fields)


def oracle_verdict(*, is_valid: bool = True, risk_score: int = 29, **overrides) -> OracleResponse:
    fields = dict(
        is_valid=is_valid,
        risk_score=risk_score,
        credit_rating="AA",
        details=["Document verification completed successfully"],
    )
    fields.update(overrides)
    return OracleResponse(**fields)


# ────────────────────────────────────────────────────────────────────────────
# Scenario helpers (drive a persisted invoice to a given state)
# ────────────────────────────────────────────────────────────────────────────


async def submitted_invoice(lifecycle: InvoiceLifecycle, **overrides) -> Invoice:
    return await lifecycle.submit_invoice(make_invoice_create(**overrides), now=NOW)


async def verified_invoice(
    lifecycle: InvoiceLifecycle, coordinator: VerificationCoordinator, **overrides
) -> Invoice:
    invoice = await submitted_invoice(lifecycle, **overrides)
    await coordinator.start_verification(invoice.id)
    return await coordinator.complete_verification(invoice.id, oracle_verdict())


async def funded_invoice(
    lifecycle: InvoiceLifecycle,
    coordinator: VerificationCoordinator,
    ledger: FundingLedger,
    commitments=(("0xInvestorA", 60_000 * UNIT), ("0xInvestorB", 30_000 * UNIT)),
) -> Invoice:
    invoice = await verified_invoice(lifecycle, coordinator)
    for investor, amount in commitments:
        await ledger.invest(invoice.id, investor, amount)
    return await lifecycle.disburse(invoice.id)


# ────────────────────────────────────────────────────────────────────────────
# Pytest fixtures
# ────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_breakers():
    """Circuit breakers are process globals; start every test closed."""
    for breaker in ALL_BREAKERS.values():
        breaker.reset()
    yield
    for breaker in ALL_BREAKERS.values():
        breaker.reset()


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Fresh SQLite database (file-backed so sessions get separate connections)."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def risk_engine():
    return RiskEngine(RiskPolicy())


@pytest.fixture()
def lifecycle(session_factory):
    return InvoiceLifecycle(session_factory, FundingPolicy(), locks=KeyedLock())


@pytest.fixture()
def ledger(lifecycle):
    return FundingLedger(lifecycle)


@pytest_asyncio.fixture()
async def coordinator(lifecycle, risk_engine):
    """
    Coordinator without an oracle and with a long watchdog, so tests drive
    ``complete_verification`` / ``handle_timeout`` explicitly.
    """
    coordinator = VerificationCoordinator(
        lifecycle,
        risk_engine,
        VerificationPolicy(timeout_seconds=3_600),
        market_source=StaticMarketDataSource(),
    )
    yield coordinator
    await coordinator.shutdown()
