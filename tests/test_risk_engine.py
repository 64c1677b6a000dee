"""
Unit tests for the pure risk engine.

Tests cover:
- Score composition from commodity, country, amount and tenor factors
- Determinism (same inputs → same outputs)
- Credit-rating bands on both sides of each boundary
- APR formula, market adjustment and clamping
- Rejection of negative / non-finite / non-numeric inputs
"""

import math
from datetime import timedelta

import pytest

from tradefin.core.exceptions import InvalidInputError
from tradefin.core.policy import DEFAULT_RATING_BANDS, RiskPolicy
from tradefin.models.invoice import CreditRating
from tradefin.schemas.market import CommodityQuote
from tradefin.services.risk_engine import RiskEngine, expected_yield, rating_for, tenor_days

from .conftest import NOW, UNIT, make_invoice

COUNTRIES = {"kenya": 12, "germany": 2}
PRICES = {"coffee": CommodityQuote(price=850_000, volatility_bps=300)}


@pytest.fixture()
def engine():
    return RiskEngine(RiskPolicy())


class TestScore:
    """Tests for RiskEngine.score composition."""

    def test_reference_invoice(self, engine):
        # coffee 5 + kenya 12 + germany 2 + amount(100k) 12 + tenor(45d) 2
        result = engine.score(make_invoice(), COUNTRIES, PRICES)
        assert result.risk_score == 33
        assert result.credit_rating == CreditRating.A
        # 800 + 33*10 + 300*5000/10000
        assert result.apr_basis_points == 1_280
        assert result.factors["amount"] == 12
        assert result.factors["tenor"] == 2

    def test_deterministic(self, engine):
        invoice = make_invoice()
        first = engine.score(invoice, COUNTRIES, PRICES)
        for _ in range(5):
            assert engine.score(invoice, COUNTRIES, PRICES) == first

    def test_lookups_are_case_insensitive(self, engine):
        invoice = make_invoice(commodity="COFFEE", supplier_country="Kenya ")
        assert engine.score(invoice, {"KENYA": 12, "Germany": 2}, PRICES).risk_score == 33

    def test_unknown_country_and_commodity_use_defaults(self, engine):
        invoice = make_invoice(commodity="unobtainium", supplier_country="atlantis")
        result = engine.score(invoice, COUNTRIES, {})
        # default commodity 10 + default country 15 + germany 2 + 12 + 2
        assert result.risk_score == 41
        # unknown commodity volatility → default 200 bps → +100
        assert result.apr_basis_points == 800 + 410 + 100

    def test_score_clamped_to_100(self, engine):
        invoice = make_invoice(commodity="diamonds", amount=5_000_000 * UNIT, due_in_days=365)
        result = engine.score(invoice, {"kenya": 60, "germany": 60}, PRICES)
        assert result.risk_score == 100
        assert result.credit_rating == CreditRating.B

    @pytest.mark.parametrize(
        "whole_units, penalty",
        [
            (9_999, 2),
            (10_000, 5),
            (49_999, 5),
            (50_000, 8),
            (99_999, 8),
            (100_000, 12),
            (499_999, 12),
            (500_000, 15),
            (999_999, 15),
            (1_000_000, 20),
        ],
    )
    def test_amount_penalty_brackets(self, engine, whole_units, penalty):
        result = engine.score(make_invoice(amount=whole_units * UNIT), COUNTRIES, PRICES)
        assert result.factors["amount"] == penalty

    @pytest.mark.parametrize(
        "days, penalty",
        [(30, 0), (31, 2), (60, 2), (61, 5), (90, 5), (91, 10), (180, 10), (181, 15)],
    )
    def test_tenor_penalty_brackets(self, engine, days, penalty):
        result = engine.score(make_invoice(due_in_days=days), COUNTRIES, PRICES)
        assert result.factors["tenor"] == penalty

    def test_explicit_submission_time(self, engine):
        invoice = make_invoice(due_in_days=45)
        later = NOW + timedelta(days=20)
        # 25 days remaining → no tenor penalty
        assert engine.score(invoice, COUNTRIES, PRICES, submitted_at=later).factors["tenor"] == 0

    def test_naive_datetimes_treated_as_utc(self, engine):
        invoice = make_invoice(
            created_at=NOW.replace(tzinfo=None),
            due_date=(NOW + timedelta(days=45)).replace(tzinfo=None),
        )
        assert engine.score(invoice, COUNTRIES, PRICES).risk_score == 33


class TestInvalidInput:
    """Invalid inputs fail with InvalidInputError instead of producing a score."""

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "100", True])
    def test_bad_amount(self, engine, amount):
        invoice = make_invoice()
        invoice.amount = amount
        with pytest.raises(InvalidInputError):
            engine.score(invoice, COUNTRIES, PRICES)

    @pytest.mark.parametrize("value", [-1, math.nan, math.inf, "high", None])
    def test_bad_country_table_value(self, engine, value):
        with pytest.raises(InvalidInputError):
            engine.score(make_invoice(), {"kenya": value, "germany": 2}, PRICES)

    @pytest.mark.parametrize("value", [-1.0, math.inf, "cheap"])
    def test_bad_price_value(self, engine, value):
        with pytest.raises(InvalidInputError):
            engine.score(make_invoice(), COUNTRIES, {"coffee": value})

    def test_bad_volatility_in_mapping(self, engine):
        with pytest.raises(InvalidInputError):
            engine.score(make_invoice(), COUNTRIES, {"coffee": {"price": 1, "volatility_bps": -3}})

    def test_due_date_before_submission(self, engine):
        invoice = make_invoice(due_in_days=-1)
        with pytest.raises(InvalidInputError, match="precedes"):
            engine.score(invoice, COUNTRIES, PRICES)

    def test_blank_commodity(self, engine):
        with pytest.raises(InvalidInputError):
            engine.score(make_invoice(commodity="  "), COUNTRIES, PRICES)


class TestRatingBands:
    """Each band boundary is inclusive on its upper bound."""

    @pytest.mark.parametrize(
        "score, rating",
        [
            (0, CreditRating.AAA),
            (15, CreditRating.AAA),
            (16, CreditRating.AA),
            (25, CreditRating.AA),
            (26, CreditRating.A),
            (40, CreditRating.A),
            (41, CreditRating.BBB),
            (55, CreditRating.BBB),
            (56, CreditRating.BB),
            (70, CreditRating.BB),
            (71, CreditRating.B),
            (100, CreditRating.B),
        ],
    )
    def test_boundaries(self, score, rating):
        assert rating_for(score, DEFAULT_RATING_BANDS) == rating

    def test_out_of_table_is_error(self):
        assert rating_for(101, DEFAULT_RATING_BANDS) == CreditRating.ERROR

    def test_policy_rejects_incomplete_bands(self):
        with pytest.raises(ValueError):
            RiskPolicy(rating_bands=((50, CreditRating.A),))


class TestApr:
    """APR = base + score premium + market adjustment, clamped."""

    def test_clamped_to_maximum(self):
        engine = RiskEngine(RiskPolicy(risk_premium_bps_per_point=100))
        result = engine.score(make_invoice(), COUNTRIES, PRICES)
        assert result.apr_basis_points == 2_500

    def test_clamped_to_minimum(self):
        engine = RiskEngine(RiskPolicy(base_apr_bps=0, risk_premium_bps_per_point=0))
        result = engine.score(make_invoice(), COUNTRIES, {"coffee": CommodityQuote(price=1, volatility_bps=0)})
        assert result.apr_basis_points == 500

    def test_volatility_raises_apr(self, engine):
        calm = engine.score(make_invoice(), COUNTRIES, {"coffee": CommodityQuote(price=1, volatility_bps=0)})
        wild = engine.score(make_invoice(), COUNTRIES, {"coffee": CommodityQuote(price=1, volatility_bps=2_000)})
        assert wild.apr_basis_points - calm.apr_basis_points == 1_000
        assert wild.risk_score == calm.risk_score


class TestHelpers:
    def test_expected_yield_simple_interest(self):
        # 60,000 at 12% for 73 days = 60,000 * 0.12 * 0.2
        assert expected_yield(60_000 * UNIT, 1_200, 73) == 1_440 * UNIT

    def test_expected_yield_zero_for_no_tenor(self):
        assert expected_yield(1_000, 1_200, 0) == 0

    def test_tenor_days_floors(self):
        assert tenor_days(NOW, NOW + timedelta(days=2, hours=23)) == 2
