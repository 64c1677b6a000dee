"""
Risk engine — pure scoring of an invoice against market reference data.

No I/O, no clock, no globals: the same invoice attributes, tables and policy
always produce the same ``(risk_score, credit_rating, apr_basis_points)``.

    risk_score = base(commodity)
               + country_risk(supplier_country) + country_risk(buyer_country)
               + amount_penalty(amount) + tenor_penalty(due_date)        ∈ [0, 100]

    apr_bps    = base_apr + risk_score * premium_per_point
               + volatility(commodity) * volatility_weight / 10_000      ∈ [min_apr, max_apr]
"""

import math
from datetime import datetime
from numbers import Real
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from tradefin.core.clock import as_utc
from tradefin.core.exceptions import InvalidInputError
from tradefin.core.policy import RiskPolicy
from tradefin.models.invoice import CreditRating
from tradefin.schemas.market import CommodityQuote

SECONDS_PER_DAY = 86_400


class RiskAssessment(BaseModel):
    """Result of :meth:`RiskEngine.score`; ``factors`` itemises the score."""

    model_config = ConfigDict(frozen=True)

    risk_score: int
    credit_rating: CreditRating
    apr_basis_points: int
    factors: Dict[str, int]


def rating_for(score: int, bands: Sequence[Tuple[int, CreditRating]]) -> CreditRating:
    """Map a 0–100 score onto the first band whose inclusive upper bound covers it."""
    for upper, rating in bands:
        if score <= upper:
            return rating
    return CreditRating.ERROR


def expected_yield(principal: int, apr_bps: int, tenor_days: int) -> int:
    """Simple-interest return of ``principal`` over ``tenor_days`` at ``apr_bps``."""
    if tenor_days <= 0 or apr_bps <= 0:
        return 0
    return principal * apr_bps * tenor_days // (10_000 * 365)


def tenor_days(submitted_at: datetime, due_date: datetime) -> int:
    """Whole days between submission and maturity."""
    delta = as_utc(due_date) - as_utc(submitted_at)
    return math.floor(delta.total_seconds() / SECONDS_PER_DAY)


def _bracket(value: int, table: Sequence[Tuple[int, int]], above: int) -> int:
    for upper, penalty in table:
        if value <= upper:
            return penalty
    return above


def _points(name: str, value: Any) -> int:
    """Validate a table or attribute value and return it as whole points."""
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidInputError(f"{name} must be numeric, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise InvalidInputError(f"{name} must be a finite non-negative number, got {value!r}")
    return int(round(value))


def _key(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} must be a non-empty string")
    return value.strip().lower()


class RiskEngine:
    """Deterministic scorer parameterised by a :class:`RiskPolicy`."""

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def score(
        self,
        invoice: Any,
        country_risk: Mapping[str, Any],
        commodity_prices: Mapping[str, Any],
        *,
        submitted_at: Optional[datetime] = None,
    ) -> RiskAssessment:
        """
        Score ``invoice`` (anything with the invoice attributes).

        ``submitted_at`` defaults to ``invoice.created_at``.  Raises
        :class:`InvalidInputError` for negative, non-finite or non-numeric
        inputs, or a due date before submission.
        """
        p = self.policy

        amount = getattr(invoice, "amount", None)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError(f"amount must be a positive integer, got {amount!r}")

        commodity = _key(getattr(invoice, "commodity", None), "commodity")
        supplier_country = _key(getattr(invoice, "supplier_country", None), "supplier_country")
        buyer_country = _key(getattr(invoice, "buyer_country", None), "buyer_country")

        start = submitted_at or getattr(invoice, "created_at", None)
        due = getattr(invoice, "due_date", None)
        if not isinstance(start, datetime) or not isinstance(due, datetime):
            raise InvalidInputError("submission time and due_date are required")
        days = tenor_days(start, due)
        if days < 0:
            raise InvalidInputError("due_date precedes submission")

        countries = {str(k).strip().lower(): v for k, v in country_risk.items()}
        prices = {str(k).strip().lower(): v for k, v in commodity_prices.items()}

        base = _points(
            f"commodity risk[{commodity}]",
            p.commodity_base_risk.get(commodity, p.default_commodity_risk),
        )
        supplier_risk = _points(
            f"country risk[{supplier_country}]",
            countries.get(supplier_country, p.default_country_risk),
        )
        buyer_risk = _points(
            f"country risk[{buyer_country}]",
            countries.get(buyer_country, p.default_country_risk),
        )
        whole_units = amount // (10 ** p.currency_decimals)
        amount_penalty = _bracket(whole_units, p.amount_penalties, p.amount_penalty_max)
        tenor_penalty = _bracket(days, p.tenor_penalties, p.tenor_penalty_max)

        raw = base + supplier_risk + buyer_risk + amount_penalty + tenor_penalty
        risk_score = max(0, min(100, raw))

        volatility = self._volatility(commodity, prices.get(commodity))
        market_adjustment = volatility * p.market_volatility_weight_bps // 10_000
        apr = p.base_apr_bps + risk_score * p.risk_premium_bps_per_point + market_adjustment
        apr = max(p.min_apr_bps, min(p.max_apr_bps, apr))

        return RiskAssessment(
            risk_score=risk_score,
            credit_rating=rating_for(risk_score, p.rating_bands),
            apr_basis_points=apr,
            factors={
                "commodity": base,
                "supplier_country": supplier_risk,
                "buyer_country": buyer_risk,
                "amount": amount_penalty,
                "tenor": tenor_penalty,
                "market_adjustment_bps": market_adjustment,
            },
        )

    def _volatility(self, commodity: str, quote: Any) -> int:
        if quote is None:
            return self.policy.default_volatility_bps
        if isinstance(quote, CommodityQuote):
            return quote.volatility_bps
        if isinstance(quote, Mapping):
            _points(f"price[{commodity}]", quote.get("price", 0))
            return _points(
                f"volatility[{commodity}]",
                quote.get("volatility_bps", self.policy.default_volatility_bps),
            )
        # A bare number is a price with no volatility estimate.
        _points(f"price[{commodity}]", quote)
        return self.policy.default_volatility_bps
