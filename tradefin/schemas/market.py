"""
Market reference data passed to the risk engine.

A :class:`MarketSnapshot` is immutable: the engine gets one per call and the
verification coordinator keeps the last good one for the fallback path.
"""

from datetime import datetime
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tradefin.core.clock import as_utc, utcnow


class CommodityQuote(BaseModel):
    """Price of one commodity (smallest currency unit) and its volatility."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    price: int = Field(..., ge=0)
    volatility_bps: int = Field(default=200, ge=0, le=10_000)


class MarketSnapshot(BaseModel):
    """Country risk table and commodity price table as of one point in time."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    country_risk: Dict[str, int] = Field(default_factory=dict)
    commodity_prices: Dict[str, CommodityQuote] = Field(default_factory=dict)
    as_of: datetime = Field(default_factory=utcnow)
    source: str = "static"

    @field_validator("country_risk", "commodity_prices", mode="before")
    @classmethod
    def normalise_keys(cls, v):
        """Table keys are matched case-insensitively."""
        if isinstance(v, dict):
            return {str(k).strip().lower(): val for k, val in v.items()}
        return v

    @field_validator("as_of")
    @classmethod
    def as_of_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    def age_seconds(self, now: datetime) -> float:
        return (as_utc(now) - self.as_of).total_seconds()
