"""
Seed script — populates the database with demo invoices.

Usage:
    python -m tradefin.seed

Runs every invoice through the real services (submission, local-oracle
verification, funding), so the seeded rows satisfy every invariant.  The
script is idempotent: it does nothing if any invoice already exists.
"""

import asyncio
import logging
from datetime import timedelta

from tradefin.core.clock import utcnow
from tradefin.core.config import settings
from tradefin.core.policy import FundingPolicy, RiskPolicy, VerificationPolicy
from tradefin.db.base import init_models
from tradefin.db.session import AsyncSessionLocal, engine
from tradefin.schemas.invoice import InvoiceCreate
from tradefin.schemas.verification import OracleRequest
from tradefin.services.funding_service import FundingLedger
from tradefin.services.lifecycle import InvoiceLifecycle
from tradefin.services.oracle import LocalVerificationOracle, StaticMarketDataSource
from tradefin.services.risk_engine import RiskEngine
from tradefin.services.verification_service import VerificationCoordinator

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

UNIT = 10 ** settings.CURRENCY_DECIMALS

# (invoice fields, days to maturity, [(investor, whole units)])
INVOICES = [
    (
        dict(
            supplier="0xKenyaCoffeeCoop",
            buyer="0xHamburgRoasters",
            amount=100_000 * UNIT,
            commodity="Coffee",
            supplier_country="Kenya",
            buyer_country="Germany",
            exporter_name="Kenya Coffee Cooperative",
            buyer_name="Hamburg Roasters GmbH",
            document_hash="QmSeedCoffee0001",
        ),
        60,
        [("0xInvestorA", 60_000), ("0xInvestorB", 30_000)],
    ),
    (
        dict(
            supplier="0xGhanaCocoaLtd",
            buyer="0xAmsterdamChoc",
            amount=250_000 * UNIT,
            commodity="Cocoa",
            supplier_country="Ghana",
            buyer_country="Netherlands",
            exporter_name="Ghana Cocoa Exporters Ltd",
            buyer_name="Amsterdam Chocolate BV",
            document_hash="QmSeedCocoa0002",
        ),
        90,
        [("0xInvestorA", 50_000)],
    ),
    (
        dict(
            supplier="0xAssamTeaEstates",
            buyer="0xLondonTeaHouse",
            amount=40_000 * UNIT,
            commodity="Tea",
            supplier_country="India",
            buyer_country="UK",
            exporter_name="Assam Tea Estates",
            buyer_name="London Tea House",
            document_hash="QmSeedTea0003",
        ),
        30,
        [],
    ),
]


async def seed() -> None:
    """Create tables and run the demo invoices through the services."""
    await init_models(engine)

    lifecycle = InvoiceLifecycle(AsyncSessionLocal, FundingPolicy.from_settings(settings))
    if (await lifecycle.get_stats()).total_invoices:
        logger.info("Database already contains invoices — skipping seed.")
        return

    coordinator = VerificationCoordinator(
        lifecycle,
        RiskEngine(RiskPolicy.from_settings(settings)),
        VerificationPolicy.from_settings(settings),
        market_source=StaticMarketDataSource(),
    )
    oracle = LocalVerificationOracle(currency_decimals=settings.CURRENCY_DECIMALS)
    ledger = FundingLedger(lifecycle)

    try:
        for fields, days, commitments in INVOICES:
            invoice = await lifecycle.submit_invoice(
                InvoiceCreate(**fields, due_date=utcnow() + timedelta(days=days))
            )
            await coordinator.start_verification(invoice.id)
            verdict = await oracle.verify(
                OracleRequest(
                    invoice_id=invoice.id,
                    commodity=invoice.commodity,
                    amount=invoice.amount,
                    supplier_country=invoice.supplier_country,
                    buyer_country=invoice.buyer_country,
                    exporter_name=invoice.exporter_name,
                    buyer_name=invoice.buyer_name,
                )
            )
            invoice = await coordinator.complete_verification(invoice.id, verdict)
            for investor, units in commitments:
                await ledger.invest(invoice.id, investor, units * UNIT)
            logger.info("Seeded invoice %s (%s)", invoice.id, invoice.status.value)
    finally:
        await coordinator.shutdown()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
