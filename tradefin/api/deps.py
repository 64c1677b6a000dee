"""
Service wiring for the HTTP layer.

The coordinator owns watchdog timers and the per-invoice locks must be
shared by every request, so the services are process-wide singletons built
lazily from :data:`settings`.  Each operation still opens its own database
session.  Tests replace these providers through
``app.dependency_overrides``.
"""

from functools import lru_cache

from tradefin.core.cache import SnapshotCache
from tradefin.core.config import settings
from tradefin.core.policy import FundingPolicy, RiskPolicy, VerificationPolicy
from tradefin.db.session import AsyncSessionLocal
from tradefin.services.funding_service import FundingLedger
from tradefin.services.lifecycle import InvoiceLifecycle
from tradefin.services.oracle import build_market_source, build_oracle
from tradefin.services.risk_engine import RiskEngine
from tradefin.services.verification_service import VerificationCoordinator


@lru_cache
def get_lifecycle() -> InvoiceLifecycle:
    return InvoiceLifecycle(AsyncSessionLocal, FundingPolicy.from_settings(settings))


@lru_cache
def get_risk_engine() -> RiskEngine:
    return RiskEngine(RiskPolicy.from_settings(settings))


@lru_cache
def get_coordinator() -> VerificationCoordinator:
    policy = VerificationPolicy.from_settings(settings)
    return VerificationCoordinator(
        lifecycle=get_lifecycle(),
        risk_engine=get_risk_engine(),
        policy=policy,
        oracle=build_oracle(settings),
        market_source=build_market_source(settings),
        snapshot_cache=SnapshotCache(max_age=policy.fallback_max_age_seconds),
    )


@lru_cache
def get_ledger() -> FundingLedger:
    return FundingLedger(get_lifecycle())
