"""
Verification coordinator — two-phase oracle verification with a timeout
fallback.

    start_verification ──► Verifying ──► complete_verification ──► Verified | Rejected
                               │
                               └── watchdog / oracle failure ──► handle_timeout (fallback)

``start_verification`` never waits for the oracle.  It moves the invoice to
Verifying, arms a watchdog task and fires the oracle request in the
background; the answer comes back through :meth:`complete_verification`
(directly, or via ``POST /invoices/{id}/verification/result`` when the
oracle calls back).  If the oracle fails or the watchdog fires first,
:meth:`handle_timeout` applies the configured fallback policy:

- ``fail_closed``: reject.
- ``fail_open``: score against the last-known-good market snapshot if it is
  fresh enough; verify when the score is acceptable, reject otherwise.

Timers live in memory.  After a restart, :meth:`sweep_expired` (run
periodically from the application lifespan) resolves every invoice whose
deadline passed while nobody was watching.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Coroutine, Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError

from tradefin.core.cache import SnapshotCache
from tradefin.core.clock import as_utc, utcnow
from tradefin.core.config import FallbackMode
from tradefin.core.exceptions import (
    AlreadyFinalizedError,
    AppException,
    InvalidInputError,
    InvalidStateError,
    NotFoundException,
    OracleTimeoutError,
    OracleUnavailableError,
)
from tradefin.core.policy import VerificationPolicy
from tradefin.models.invoice import CreditRating, Invoice, InvoiceStatus
from tradefin.models.verification import VerificationRecord
from tradefin.repositories.invoice_repo import InvoiceRepository
from tradefin.repositories.verification_repo import VerificationRepository
from tradefin.schemas.market import MarketSnapshot
from tradefin.schemas.verification import OracleRequest, OracleResponse
from tradefin.services.lifecycle import InvoiceLifecycle, UnitOfWork
from tradefin.services.oracle import MarketDataSource, VerificationOracle
from tradefin.services.risk_engine import RiskAssessment, RiskEngine

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "market"


class VerificationCoordinator:
    """
    Drives invoices from Submitted to Verified or Rejected.

    Parameters
    ----------
    lifecycle : InvoiceLifecycle
        Unit-of-work provider and sole writer of invoice status.
    risk_engine : RiskEngine
        Produces the committed risk fields.
    policy : VerificationPolicy
        Timeout, fallback mode and maximum snapshot age.
    oracle : VerificationOracle, optional
        When given, ``start_verification`` sends it the request.  Without
        one, results must be delivered through :meth:`complete_verification`.
    market_source : MarketDataSource, optional
        Supplies market snapshots; successful reads refresh the
        last-known-good cache.
    snapshot_cache : SnapshotCache, optional
        Last-known-good store (one is created if omitted).
    """

    def __init__(
        self,
        lifecycle: InvoiceLifecycle,
        risk_engine: RiskEngine,
        policy: Optional[VerificationPolicy] = None,
        oracle: Optional[VerificationOracle] = None,
        market_source: Optional[MarketDataSource] = None,
        snapshot_cache: Optional[SnapshotCache] = None,
    ):
        self._lifecycle = lifecycle
        self._risk = risk_engine
        self.policy = policy or VerificationPolicy()
        self._oracle = oracle
        self._market = market_source
        self.snapshots: SnapshotCache = snapshot_cache or SnapshotCache(
            max_age=self.policy.fallback_max_age_seconds
        )
        self._timers: Dict[int, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of armed watchdog timers."""
        return len(self._timers)

    # ── Queries ──

    async def get_verification(self, invoice_id: int) -> VerificationRecord:
        """Return the committed assessment of ``invoice_id``."""
        async with self._lifecycle.session() as db:
            if await InvoiceRepository(Invoice, db).get(invoice_id) is None:
                raise NotFoundException("Invoice", invoice_id)
            record = await VerificationRepository(VerificationRecord, db).get_by_invoice(
                invoice_id
            )
        if record is None:
            raise NotFoundException("Verification result for invoice", invoice_id)
        return record

    # ── Commands ──

    async def start_verification(
        self, invoice_id: int, now: Optional[datetime] = None
    ) -> Invoice:
        """
        Submitted → Verifying.  Arms the watchdog and, if an oracle is
        configured, sends the request in the background.
        """
        now = as_utc(now or utcnow())
        async with self._lifecycle.transaction(invoice_id) as uow:
            invoice = uow.invoice
            if invoice.status != InvoiceStatus.SUBMITTED:
                raise InvalidStateError(
                    f"Invoice {invoice_id} cannot start verification from "
                    f"status '{invoice.status.value}'"
                )
            self._lifecycle.apply_transition(
                invoice, InvoiceStatus.VERIFYING, verification_started_at=now
            )
            request = OracleRequest(
                invoice_id=invoice.id,
                commodity=invoice.commodity,
                amount=invoice.amount,
                supplier_country=invoice.supplier_country,
                buyer_country=invoice.buyer_country,
                exporter_name=invoice.exporter_name,
                buyer_name=invoice.buyer_name,
            )

        self._arm_timer(invoice_id, self.policy.timeout_seconds)
        if self._oracle is not None:
            self._spawn(self._ask_oracle(invoice_id, request))
        return invoice

    async def complete_verification(
        self,
        invoice_id: int,
        result: OracleResponse,
        market: Optional[MarketSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Commit the oracle's verdict together with our own risk assessment.

        Raises :class:`AlreadyFinalizedError` when the verification was
        already resolved and :class:`InvalidStateError` when it never
        started.  Risk fields are written exactly once.
        """
        if result.invoice_id is not None and result.invoice_id != invoice_id:
            raise InvalidInputError(
                f"Result is for invoice {result.invoice_id}, not {invoice_id}"
            )
        now = as_utc(now or utcnow())

        # Early exit before touching the market feed.  Unlocked, so only a
        # hint: the re-check under the invoice lock below is authoritative.
        self._ensure_verifying(await self._lifecycle.get_invoice(invoice_id))
        snapshot = market or await self._current_snapshot(now)

        async with self._lifecycle.transaction(invoice_id) as uow:
            self._ensure_verifying(uow.invoice)
            assessment = self._risk.score(
                uow.invoice, snapshot.country_risk, snapshot.commodity_prices
            )
            reason = None
            if not result.is_valid:
                reason = " | ".join(result.details) or "Rejected by verification oracle"
            await self._commit_outcome(
                uow,
                assessment,
                is_valid=result.is_valid,
                details=result.details,
                checks=result.verification_checks.model_dump(by_alias=True),
                oracle_risk_score=result.risk_score,
                used_fallback=False,
                reason=reason,
                now=now,
            )
        self._cancel_timer(invoice_id)
        return uow.invoice

    async def handle_timeout(
        self,
        invoice_id: int,
        now: Optional[datetime] = None,
        cause: Optional[AppException] = None,
    ) -> Optional[Invoice]:
        """
        Resolve a verification the oracle did not answer.

        No-op (returns ``None``) when the invoice already left Verifying.
        """
        self._cancel_timer(invoice_id)
        now = as_utc(now or utcnow())
        cause = cause or OracleTimeoutError(
            f"Verification oracle did not answer within {self.policy.timeout_seconds:.0f}s"
        )

        snapshot = None
        if self.policy.fallback_mode == FallbackMode.FAIL_OPEN:
            snapshot = await self._fallback_snapshot(now)

        async with self._lifecycle.transaction(invoice_id) as uow:
            invoice = uow.invoice
            if invoice.status != InvoiceStatus.VERIFYING:
                logger.debug(
                    "Timeout for invoice %s ignored (status %s)", invoice_id, invoice.status.value
                )
                return None

            if self.policy.fallback_mode == FallbackMode.FAIL_CLOSED:
                self._reject_unassessed(invoice, cause.message, now)
            elif snapshot is None:
                unavailable = OracleUnavailableError(
                    "No market snapshot fresher than "
                    f"{self.policy.fallback_max_age_seconds:.0f}s for the fallback assessment"
                )
                self._reject_unassessed(invoice, f"{cause.message}; {unavailable.message}", now)
            else:
                try:
                    assessment = self._risk.score(
                        invoice, snapshot.country_risk, snapshot.commodity_prices
                    )
                except InvalidInputError as exc:
                    self._reject_unassessed(invoice, f"{cause.message}; {exc.message}", now)
                else:
                    acceptable = assessment.risk_score < self._risk.policy.max_acceptable_risk
                    details = [
                        f"Fallback assessment: {cause.message}",
                        f"Market snapshot from {snapshot.source} as of {snapshot.as_of.isoformat()}",
                        f"Risk assessment: {assessment.risk_score}/100",
                    ]
                    reason = None
                    if not acceptable:
                        reason = (
                            f"Fallback risk score {assessment.risk_score} is not below "
                            f"{self._risk.policy.max_acceptable_risk}"
                        )
                    await self._commit_outcome(
                        uow,
                        assessment,
                        is_valid=acceptable,
                        details=details,
                        checks={},
                        oracle_risk_score=None,
                        used_fallback=True,
                        reason=reason,
                        now=now,
                    )
            logger.warning(
                "Fallback (%s) applied to invoice %s → %s",
                self.policy.fallback_mode.value,
                invoice_id,
                invoice.status.value,
                extra={"invoice_id": invoice_id},
            )
        return uow.invoice

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[int]:
        """Apply :meth:`handle_timeout` to every Verifying invoice past its deadline."""
        now = as_utc(now or utcnow())
        cutoff = now - timedelta(seconds=self.policy.timeout_seconds)
        async with self._lifecycle.session() as db:
            expired = await InvoiceRepository(Invoice, db).ids_verifying_started_before(cutoff)

        resolved: List[int] = []
        for invoice_id in expired:
            if await self.handle_timeout(invoice_id, now=now) is not None:
                resolved.append(invoice_id)
        if resolved:
            logger.info("Swept %d expired verification(s): %s", len(resolved), resolved)
        return resolved

    async def refresh_market_data(self, now: Optional[datetime] = None) -> Optional[MarketSnapshot]:
        """
        Read the market-data source into the last-known-good cache.

        Returns ``None`` when no source is configured.  Raises
        :class:`OracleUnavailableError` when the source is down or answers
        with a snapshot older than ``fallback_max_age_seconds``; a stale
        answer is not cached, so it never displaces a fresher one.
        """
        if self._market is None:
            return None
        now = as_utc(now or utcnow())
        snapshot = await self._market.fetch_snapshot()
        age = snapshot.age_seconds(now)
        max_age = self.policy.fallback_max_age_seconds
        if age > max_age:
            raise OracleUnavailableError(
                f"Market snapshot from {snapshot.source} is {age:.0f}s old "
                f"(limit {max_age:.0f}s)"
            )
        self.snapshots.put(SNAPSHOT_KEY, snapshot)
        logger.debug("Market snapshot refreshed from %s", snapshot.source)
        return snapshot

    async def shutdown(self) -> None:
        """Cancel every watchdog and in-flight oracle request, then close HTTP clients."""
        tasks = list(self._timers.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._background.clear()
        for dependency in (self._oracle, self._market):
            aclose = getattr(dependency, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.info("Verification coordinator stopped (%d task(s) cancelled)", len(tasks))

    # ── Outcome ──

    async def _commit_outcome(
        self,
        uow: UnitOfWork,
        assessment: RiskAssessment,
        *,
        is_valid: bool,
        details: List[str],
        checks: Dict[str, Any],
        oracle_risk_score: Optional[int],
        used_fallback: bool,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        record = VerificationRecord(
            invoice_id=uow.invoice.id,
            is_valid=is_valid,
            risk_score=assessment.risk_score,
            credit_rating=assessment.credit_rating,
            apr_basis_points=assessment.apr_basis_points,
            oracle_risk_score=oracle_risk_score,
            details=list(details),
            verification_checks=checks,
            used_fallback=used_fallback,
            verified_at=now,
        )
        try:
            await uow.verifications.add(record)
        except IntegrityError:
            raise AlreadyFinalizedError(uow.invoice.id, uow.invoice.status)

        self._lifecycle.apply_transition(
            uow.invoice,
            InvoiceStatus.VERIFIED if is_valid else InvoiceStatus.REJECTED,
            risk_score=assessment.risk_score,
            credit_rating=assessment.credit_rating,
            apr_basis_points=assessment.apr_basis_points,
            used_fallback=used_fallback,
            verified_at=now,
            rejection_reason=reason,
        )

    def _reject_unassessed(self, invoice: Invoice, reason: str, now: datetime) -> None:
        self._lifecycle.apply_transition(
            invoice,
            InvoiceStatus.REJECTED,
            credit_rating=CreditRating.ERROR,
            used_fallback=True,
            verified_at=now,
            rejection_reason=reason,
        )

    @staticmethod
    def _ensure_verifying(invoice: Invoice) -> None:
        if invoice.status == InvoiceStatus.VERIFYING:
            return
        if invoice.status == InvoiceStatus.SUBMITTED:
            raise InvalidStateError(f"Verification of invoice {invoice.id} has not started")
        raise AlreadyFinalizedError(invoice.id, invoice.status)

    # ── Market data ──

    async def _current_snapshot(self, now: datetime) -> MarketSnapshot:
        """Fresh snapshot from the source, else the last known good one."""
        try:
            snapshot = await self.refresh_market_data(now)
        except OracleUnavailableError as exc:
            logger.warning("Market data unavailable, using last known good: %s", exc.message)
        else:
            if snapshot is not None:
                return snapshot
        snapshot = self._last_known_good(now)
        if snapshot is None:
            raise OracleUnavailableError("Market data unavailable and no recent snapshot cached")
        return snapshot

    async def _fallback_snapshot(self, now: datetime) -> Optional[MarketSnapshot]:
        try:
            await self.refresh_market_data(now)
        except OracleUnavailableError as exc:
            logger.warning("Market data unavailable during fallback: %s", exc.message)
        return self._last_known_good(now)

    def _last_known_good(self, now: datetime) -> Optional[MarketSnapshot]:
        max_age = self.policy.fallback_max_age_seconds
        snapshot = self.snapshots.get_fresh(SNAPSHOT_KEY, max_age=max_age)
        if snapshot is None or snapshot.age_seconds(now) > max_age:
            return None
        return snapshot

    # ── Background tasks ──

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _arm_timer(self, invoice_id: int, delay: float) -> None:
        self._cancel_timer(invoice_id)
        self._timers[invoice_id] = asyncio.create_task(self._watchdog(invoice_id, delay))

    def _cancel_timer(self, invoice_id: int) -> None:
        task = self._timers.pop(invoice_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _watchdog(self, invoice_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(invoice_id, None)
        try:
            await self.handle_timeout(invoice_id)
        except Exception:
            logger.exception("Timeout handling failed for invoice %s", invoice_id)

    async def _ask_oracle(self, invoice_id: int, request: OracleRequest) -> None:
        try:
            result = await self._oracle.verify(request)
        except (OracleTimeoutError, OracleUnavailableError) as exc:
            logger.warning(
                "Oracle failed for invoice %s (%s); applying fallback",
                invoice_id,
                exc.message,
                extra={"invoice_id": invoice_id},
            )
            try:
                await self.handle_timeout(invoice_id, cause=exc)
            except Exception:
                logger.exception("Fallback failed for invoice %s", invoice_id)
            return
        except Exception:
            logger.exception("Oracle request for invoice %s crashed", invoice_id)
            return

        try:
            await self.complete_verification(invoice_id, result)
        except AlreadyFinalizedError:
            logger.warning("Late oracle answer for invoice %s ignored", invoice_id)
        except Exception:
            logger.exception("Recording oracle answer for invoice %s failed", invoice_id)
