"""
External reference-data capabilities: the verification oracle and the
market-data feed.

Both are expressed as :class:`typing.Protocol` interfaces so the coordinator
can be driven by the HTTP clients in production, by the built-in
:class:`LocalVerificationOracle` / :class:`StaticMarketDataSource` in a
self-contained deployment, and by plain fakes in tests.

Failures are normalised at this boundary:

- no answer in time → :class:`OracleTimeoutError`
- connection failure, 5xx, open circuit, malformed payload →
  :class:`OracleUnavailableError`
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx
from pydantic import ValidationError

from tradefin.core.clock import utcnow
from tradefin.core.config import Settings
from tradefin.core.exceptions import OracleTimeoutError, OracleUnavailableError
from tradefin.core.policy import (
    DEFAULT_COMMODITY_PRICES,
    DEFAULT_COMMODITY_RISK,
    DEFAULT_COUNTRY_RISK,
    DEFAULT_RATING_BANDS,
)
from tradefin.core.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    market_circuit_breaker,
    oracle_circuit_breaker,
    retry_with_backoff,
)
from tradefin.models.invoice import CreditRating
from tradefin.schemas.market import CommodityQuote, MarketSnapshot
from tradefin.schemas.verification import OracleRequest, OracleResponse, VerificationChecks
from tradefin.services.risk_engine import rating_for

logger = logging.getLogger(__name__)


class VerificationOracle(Protocol):
    """Answers a verification request for one invoice."""

    async def verify(self, request: OracleRequest) -> OracleResponse:
        ...


class MarketDataSource(Protocol):
    """Produces the current market snapshot."""

    async def fetch_snapshot(self) -> MarketSnapshot:
        ...


# ────────────────────────────────────────────────────────────────────────────
# HTTP implementations
# ────────────────────────────────────────────────────────────────────────────


class _HttpClientMixin:
    """Owns (or borrows) an ``httpx.AsyncClient``."""

    _client: Optional[httpx.AsyncClient]
    _owns_client: bool
    _timeout: float

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class HttpVerificationOracle(_HttpClientMixin):
    """
    Verification oracle reached over HTTP.

    ``POST {base_url}/verify`` with the camelCase request body; the JSON
    response is validated into :class:`OracleResponse`.  Transient transport
    errors are retried with backoff, and every attempt goes through the
    ``oracle`` circuit breaker.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: CircuitBreaker = oracle_circuit_breaker,
    ):
        self._url = base_url.rstrip("/") + "/verify"
        self._headers = {"X-API-Key": api_key} if api_key else {}
        self._timeout = timeout
        self._client = client
        self._owns_client = False
        self._breaker = breaker

    @retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=4.0)
    async def _post(self, body: Dict[str, Any]) -> Any:
        response = await self._get_client().post(self._url, json=body, headers=self._headers)
        response.raise_for_status()
        return response.json()

    async def verify(self, request: OracleRequest) -> OracleResponse:
        body = request.model_dump(by_alias=True)
        try:
            payload = await self._breaker.call(self._post, body)
        except CircuitBreakerError as exc:
            raise OracleUnavailableError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise OracleTimeoutError(
                f"Verification oracle timed out for invoice {request.invoice_id}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise OracleUnavailableError(
                f"Verification oracle request failed: {type(exc).__name__}: {exc}"
            ) from exc

        try:
            return OracleResponse.model_validate(payload)
        except ValidationError as exc:
            raise OracleUnavailableError(
                f"Malformed oracle response for invoice {request.invoice_id}"
            ) from exc


class HttpMarketDataSource(_HttpClientMixin):
    """Market snapshot fetched with ``GET {url}`` (camelCase or snake_case JSON)."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: CircuitBreaker = market_circuit_breaker,
    ):
        self._url = url
        self._timeout = timeout
        self._client = client
        self._owns_client = False
        self._breaker = breaker

    @retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=4.0)
    async def _get(self) -> Any:
        response = await self._get_client().get(self._url)
        response.raise_for_status()
        return response.json()

    async def fetch_snapshot(self) -> MarketSnapshot:
        try:
            payload = await self._breaker.call(self._get)
        except CircuitBreakerError as exc:
            raise OracleUnavailableError(str(exc)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise OracleUnavailableError(
                f"Market data unavailable: {type(exc).__name__}: {exc}"
            ) from exc

        if isinstance(payload, dict):
            payload.setdefault("source", "http")
        try:
            return MarketSnapshot.model_validate(payload)
        except ValidationError as exc:
            raise OracleUnavailableError("Malformed market data payload") from exc


# ────────────────────────────────────────────────────────────────────────────
# Built-in implementations
# ────────────────────────────────────────────────────────────────────────────


class StaticMarketDataSource:
    """Serves fixed tables, stamped with the time of each read."""

    def __init__(
        self,
        country_risk: Optional[Mapping[str, int]] = None,
        commodity_prices: Optional[Mapping[str, Tuple[int, int]]] = None,
    ):
        self._country_risk = dict(country_risk if country_risk is not None else DEFAULT_COUNTRY_RISK)
        prices = commodity_prices if commodity_prices is not None else DEFAULT_COMMODITY_PRICES
        self._prices = {
            name: CommodityQuote(price=price, volatility_bps=vol)
            for name, (price, vol) in prices.items()
        }

    async def fetch_snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            country_risk=self._country_risk,
            commodity_prices=self._prices,
            as_of=utcnow(),
            source="static",
        )


SANCTIONED_COUNTRIES = frozenset({"iran", "north korea", "syria", "cuba"})


class LocalVerificationOracle:
    """
    In-process oracle applying the trade-verification rule set.

    Risk factors (points): commodity 0–30, geography (worse of the two
    countries) 0–25, amount 2–20, entity red flags 0–15, sanctions 0/25,
    fraud heuristics 2–15.  The total is capped at 100 and the trade is
    valid when it stays below ``accept_below`` (70).
    """

    def __init__(
        self,
        currency_decimals: int = 6,
        accept_below: int = 70,
        rating_bands: Sequence[Tuple[int, CreditRating]] = DEFAULT_RATING_BANDS,
    ):
        self._unit = 10 ** currency_decimals
        self._accept_below = accept_below
        self._bands = rating_bands

    def assess(self, request: OracleRequest) -> Dict[str, int]:
        """Return the individual risk factors and their total."""
        commodity = request.commodity.strip().lower()
        supplier_country = request.supplier_country.strip().lower()
        buyer_country = request.buyer_country.strip().lower()
        amount = request.amount // self._unit

        commodity_risk = DEFAULT_COMMODITY_RISK.get(commodity, 10)
        supplier_risk = DEFAULT_COUNTRY_RISK.get(supplier_country, 15)
        buyer_risk = DEFAULT_COUNTRY_RISK.get(buyer_country, 15)
        geographic_risk = max(supplier_risk, buyer_risk)

        if amount < 10_000:
            amount_risk = 2
        elif amount < 50_000:
            amount_risk = 5
        elif amount < 100_000:
            amount_risk = 8
        elif amount < 500_000:
            amount_risk = 12
        elif amount < 1_000_000:
            amount_risk = 15
        else:
            amount_risk = 20

        exporter = request.exporter_name.strip().lower()
        buyer = request.buyer_name.strip().lower()
        entity_risk = 0
        if "unknown" in exporter or "unknown" in buyer:
            entity_risk += 10
        if len(exporter) < 5 or len(buyer) < 5:
            entity_risk += 5

        sanctions_risk = (
            25 if supplier_country in SANCTIONED_COUNTRIES or buyer_country in SANCTIONED_COUNTRIES
            else 0
        )

        if amount > 1_000_000 and (supplier_risk > 15 or buyer_risk > 15):
            fraud_risk = 15
        elif amount > 500_000 and supplier_risk > 10:
            fraud_risk = 10
        else:
            fraud_risk = 2

        total = min(
            100,
            commodity_risk + geographic_risk + amount_risk + entity_risk + sanctions_risk + fraud_risk,
        )
        return {
            "commodity": commodity_risk,
            "geographic": geographic_risk,
            "amount": amount_risk,
            "entity": entity_risk,
            "sanctions": sanctions_risk,
            "fraud": fraud_risk,
            "total": total,
        }

    async def verify(self, request: OracleRequest) -> OracleResponse:
        factors = self.assess(request)
        total = factors["total"]
        is_valid = total < self._accept_below
        return OracleResponse(
            invoice_id=request.invoice_id,
            is_valid=is_valid,
            risk_score=total,
            credit_rating=rating_for(total, self._bands).value,
            details=self._details(factors, is_valid),
            verification_checks=VerificationChecks(
                document_integrity=True,
                sanctions_check="FLAGGED" if factors["sanctions"] > 20 else "CLEAR",
                fraud_check="FAILED" if factors["fraud"] > 30 else "PASSED",
                commodity_check="REJECTED" if factors["commodity"] > 25 else "APPROVED",
                entity_verification="VERIFIED",
            ),
        )

    @staticmethod
    def _details(factors: Dict[str, int], is_valid: bool) -> List[str]:
        total = factors["total"]
        details: List[str] = []
        if is_valid:
            details.append("Document verification completed successfully")
            if total < 20:
                details.append("Low risk trade - excellent credit profile")
            elif total < 40:
                details.append("Moderate risk trade - standard due diligence applied")
            else:
                details.append("Elevated risk trade - enhanced monitoring recommended")
        else:
            details.append("Trade requires manual review due to high risk factors")
            if factors["sanctions"] > 20:
                details.append("Sanctions screening flagged for review")
            if factors["fraud"] > 30:
                details.append("Fraud risk indicators detected")
            if factors["geographic"] > 20:
                details.append("High geographic risk jurisdiction")
        details.append(f"Risk assessment: {total}/100")
        return details


# ── Factories used by the API dependency wiring ──


def build_oracle(s: Settings) -> VerificationOracle:
    """HTTP oracle when ``ORACLE_URL`` is set, otherwise the local rule set."""
    if s.ORACLE_URL:
        logger.info("Using HTTP verification oracle at %s", s.ORACLE_URL)
        return HttpVerificationOracle(
            s.ORACLE_URL, api_key=s.ORACLE_API_KEY, timeout=s.ORACLE_HTTP_TIMEOUT
        )
    logger.info("Using local verification oracle")
    return LocalVerificationOracle(
        currency_decimals=s.CURRENCY_DECIMALS, accept_below=s.MAX_ACCEPTABLE_RISK
    )


def build_market_source(s: Settings) -> MarketDataSource:
    """HTTP feed when ``MARKET_DATA_URL`` is set, otherwise the static tables."""
    if s.MARKET_DATA_URL:
        logger.info("Using HTTP market data at %s", s.MARKET_DATA_URL)
        return HttpMarketDataSource(s.MARKET_DATA_URL, timeout=s.ORACLE_HTTP_TIMEOUT)
    return StaticMarketDataSource()
