"""
Explicit financing policy objects.

The risk engine, funding ledger and verification coordinator never read
module-level settings; they receive one of these frozen structs at
construction time.  Production builds them from :data:`settings` via the
``from_settings`` constructors, tests build them directly with whatever
numbers the scenario needs.
"""

from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tradefin.core.config import FallbackMode, Settings
from tradefin.models.invoice import CreditRating

# Commodity base risk, 0–30 points.
DEFAULT_COMMODITY_RISK: Dict[str, int] = {
    "coffee": 5,
    "cocoa": 8,
    "tea": 5,
    "spices": 10,
    "electronics": 15,
    "machinery": 12,
    "textiles": 8,
    "oil": 25,
    "gas": 30,
    "minerals": 20,
    "gold": 25,
    "diamonds": 30,
    "timber": 15,
    "rubber": 10,
}

# Country risk points used by the static market-data source.
DEFAULT_COUNTRY_RISK: Dict[str, int] = {
    "usa": 1,
    "canada": 2,
    "uk": 2,
    "germany": 2,
    "france": 2,
    "japan": 3,
    "australia": 3,
    "singapore": 4,
    "uae": 5,
    "china": 8,
    "india": 6,
    "brazil": 10,
    "mexico": 8,
    "kenya": 12,
    "ghana": 10,
    "nigeria": 15,
    "ethiopia": 12,
    "ivory coast": 13,
    "south africa": 8,
    "egypt": 12,
    "russia": 20,
    "iran": 25,
    "iraq": 25,
    "afghanistan": 25,
}

# Commodity prices in cents with an annualised volatility estimate.
DEFAULT_COMMODITY_PRICES: Dict[str, Tuple[int, int]] = {
    "coffee": (850_000, 300),
    "cocoa": (420_000, 350),
    "tea": (1_500_000, 150),
    "cotton": (180_000, 200),
    "rice": (120_000, 100),
    "wheat": (80_000, 150),
    "gold": (6_500_000, 120),
    "silver": (80_000, 250),
}

# (inclusive upper bound on whole currency units, penalty)
DEFAULT_AMOUNT_PENALTIES: Tuple[Tuple[int, int], ...] = (
    (9_999, 2),
    (49_999, 5),
    (99_999, 8),
    (499_999, 12),
    (999_999, 15),
)
DEFAULT_AMOUNT_PENALTY_MAX = 20

# (inclusive upper bound on tenor days, penalty)
DEFAULT_TENOR_PENALTIES: Tuple[Tuple[int, int], ...] = (
    (30, 0),
    (60, 2),
    (90, 5),
    (180, 10),
)
DEFAULT_TENOR_PENALTY_MAX = 15

# (inclusive upper bound on risk score, rating); the last bound must be 100.
DEFAULT_RATING_BANDS: Tuple[Tuple[int, CreditRating], ...] = (
    (15, CreditRating.AAA),
    (25, CreditRating.AA),
    (40, CreditRating.A),
    (55, CreditRating.BBB),
    (70, CreditRating.BB),
    (100, CreditRating.B),
)


class RiskPolicy(BaseModel):
    """Tables and constants used by :class:`tradefin.services.risk_engine.RiskEngine`."""

    model_config = ConfigDict(frozen=True)

    currency_decimals: int = Field(default=6, ge=0, le=18)
    commodity_base_risk: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_COMMODITY_RISK)
    )
    default_commodity_risk: int = 10
    default_country_risk: int = 15
    amount_penalties: Tuple[Tuple[int, int], ...] = DEFAULT_AMOUNT_PENALTIES
    amount_penalty_max: int = DEFAULT_AMOUNT_PENALTY_MAX
    tenor_penalties: Tuple[Tuple[int, int], ...] = DEFAULT_TENOR_PENALTIES
    tenor_penalty_max: int = DEFAULT_TENOR_PENALTY_MAX
    rating_bands: Tuple[Tuple[int, CreditRating], ...] = DEFAULT_RATING_BANDS
    base_apr_bps: int = 800
    risk_premium_bps_per_point: int = 10
    min_apr_bps: int = 500
    max_apr_bps: int = 2_500
    default_volatility_bps: int = 200
    market_volatility_weight_bps: int = 5_000
    max_acceptable_risk: int = 70

    @model_validator(mode="after")
    def _check_tables(self) -> "RiskPolicy":
        bounds = [upper for upper, _ in self.rating_bands]
        if not bounds or bounds != sorted(bounds) or bounds[-1] < 100:
            raise ValueError("rating_bands must be ascending and cover scores up to 100")
        for name in ("amount_penalties", "tenor_penalties"):
            uppers = [upper for upper, _ in getattr(self, name)]
            if uppers != sorted(uppers):
                raise ValueError(f"{name} must be sorted by upper bound")
        if self.min_apr_bps > self.max_apr_bps:
            raise ValueError("min_apr_bps must not exceed max_apr_bps")
        return self

    @classmethod
    def from_settings(cls, s: Settings) -> "RiskPolicy":
        return cls(
            currency_decimals=s.CURRENCY_DECIMALS,
            base_apr_bps=s.BASE_APR_BPS,
            risk_premium_bps_per_point=s.RISK_PREMIUM_BPS_PER_POINT,
            min_apr_bps=s.MIN_APR_BPS,
            max_apr_bps=s.MAX_APR_BPS,
            market_volatility_weight_bps=s.MARKET_VOLATILITY_WEIGHT_BPS,
            max_acceptable_risk=s.MAX_ACCEPTABLE_RISK,
        )


class FundingPolicy(BaseModel):
    """Constants used by the lifecycle and the funding ledger."""

    model_config = ConfigDict(frozen=True)

    funding_percentage_bps: int = Field(default=9_000, gt=0, le=10_000)
    min_tenor_days: int = Field(default=7, ge=0)
    default_grace_days: int = Field(default=0, ge=0)

    def target_for(self, amount: int) -> int:
        """Funding target for an invoice of face value ``amount``."""
        return amount * self.funding_percentage_bps // 10_000

    @classmethod
    def from_settings(cls, s: Settings) -> "FundingPolicy":
        return cls(
            funding_percentage_bps=s.FUNDING_PERCENTAGE_BPS,
            min_tenor_days=s.MIN_TENOR_DAYS,
            default_grace_days=s.DEFAULT_GRACE_DAYS,
        )


class VerificationPolicy(BaseModel):
    """Timeout and fallback behaviour of the verification coordinator."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=300.0, gt=0)
    fallback_mode: FallbackMode = FallbackMode.FAIL_OPEN
    fallback_max_age_seconds: float = Field(default=3_600.0, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "VerificationPolicy":
        return cls(
            timeout_seconds=s.VERIFICATION_TIMEOUT_SECONDS,
            fallback_mode=s.FALLBACK_MODE,
            fallback_max_age_seconds=s.FALLBACK_MAX_AGE_SECONDS,
        )
