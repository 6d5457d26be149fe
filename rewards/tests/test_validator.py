"""
Unit Tests for the Position Validator

Tests cover:
1. Eligibility gates (reward token, minimum value, in range)
2. Full-range fast path
3. Concentrated positions checked against the price at creation
4. Missing price policy and bounded backoff
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from core.clock import ManualClock
from core.errors import ValidationError
from program.models import FormulaParameters
from rewards.market_data import InMemoryMarketData, RetryPolicy
from rewards.models import Confidence, PositionSubmission
from rewards.validator import (
    MissingPricePolicy,
    PositionValidator,
    assess_balance_ratio,
    expected_token0_share,
    is_full_range,
    summarize,
)


# Test constants
KILT = "0x5d0dd05bb095fdd6af4865a1adf97c39c85ad2d8"
WETH = "0x4200000000000000000000000000000000000006"
POOL = "0x82da478b1382b951cbad01beb9ed459cdb16458e"
CREATED = datetime(2026, 7, 4, 12, 0, tzinfo=timezone.utc)
PARAMS = FormulaParameters(
    time_boost_coefficient=Decimal("0.6"),
    full_range_bonus=Decimal("1.2"),
    minimum_position_value_usd=Decimal("10"),
    lock_period_days=7,
    balance_ratio_tolerance=Decimal("0.05"),
)


def make_submission(**overrides) -> PositionSubmission:
    values = dict(
        id="pos-1",
        owner="0xowner",
        pool_address=POOL,
        token0=KILT,
        token1=WETH,
        amount0=Decimal("100"),
        amount1=Decimal("100"),
        value_usd=Decimal("200"),
        price_range_lower=Decimal("0.25"),
        price_range_upper=Decimal("4"),
        current_pool_price=Decimal("1"),
        created_at=CREATED,
    )
    values.update(overrides)
    return PositionSubmission(**values)


def make_validator(policy=MissingPricePolicy.FAIL_CLOSED, with_price=True):
    market = InMemoryMarketData()
    if with_price:
        market.record_price(POOL, CREATED - timedelta(minutes=5), Decimal("1"))
    sleeps = []
    validator = PositionValidator(
        KILT,
        market,
        missing_price_policy=policy,
        retry=RetryPolicy(attempts=3, base_delay=0.01, jitter=0),
        clock=ManualClock(CREATED + timedelta(days=1)),
        sleep=sleeps.append,
    )
    return validator, market, sleeps


class TestEligibilityGates:
    """Tests for the checks every position must pass."""

    def test_requires_reward_token(self):
        """A position without the reward token is rejected with high confidence."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(token0=WETH, token1="0xusdc"), PARAMS)
        assert result.valid is False
        assert result.confidence == Confidence.HIGH
        assert "reward token" in result.reason

    def test_reward_token_match_ignores_case(self):
        """Token addresses are compared case-insensitively."""
        assert make_submission(token0=KILT.upper().replace("0X", "0x")).includes_token(KILT)

    def test_minimum_value(self):
        """Positions below the minimum USD value are rejected."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(value_usd=Decimal("9.99")), PARAMS)
        assert result.valid is False
        assert result.details.minimum_value_usd == Decimal("10")
        assert result.details.value_usd == Decimal("9.99")

    def test_out_of_range(self):
        """A position out of range at the current pool price is rejected."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(), PARAMS, pool_price=Decimal("10"))
        assert result.valid is False
        assert result.details.current_price == Decimal("10")
        assert "out of range" in result.reason

    def test_invalid_bounds_rejected_at_submission(self):
        """An inverted price range never reaches the validator."""
        with pytest.raises(ValueError):
            make_submission(price_range_lower=Decimal("4"), price_range_upper=Decimal("0.25"))

    def test_naive_created_at_rejected_at_submission(self):
        """A creation time without a timezone is a schema error."""
        with pytest.raises(ValueError):
            make_submission(created_at=datetime(2026, 7, 4, 12, 0))

    def test_documented_example_in_range(self):
        """The published submission example parses and sits inside its range."""
        example = PositionSubmission.model_config["json_schema_extra"]["example"]
        submission = PositionSubmission.model_validate(example)
        assert submission.is_in_range(submission.current_pool_price)


class TestFullRange:
    """Tests for the full-range fast path."""

    def test_full_range_auto_valid(self):
        """Full-range positions pass with high confidence and a 50/50 ratio."""
        validator, _, _ = make_validator(with_price=False)
        result = validator.validate(
            make_submission(price_range_lower=Decimal("0.0001"), price_range_upper=Decimal("1000000"),
                            amount1=Decimal("3")),
            PARAMS,
        )
        assert result.valid is True
        assert result.is_full_range is True
        assert result.confidence == Confidence.HIGH
        assert result.balance_ratio == Decimal("0.5")
        assert result.expected_ratio == Decimal("0.5")

    def test_full_range_tolerance(self):
        """Bounds within 1% of the canonical full range count as full range."""
        assert is_full_range(Decimal("0.000101"), Decimal("990000"))
        assert not is_full_range(Decimal("0.0002"), Decimal("1000000"))
        assert not is_full_range(Decimal("0.0001"), Decimal("900000"))


class TestConcentrated:
    """Tests for the balance-ratio check on concentrated positions."""

    def test_balanced_position_valid(self):
        """A ratio matching the curve at creation is valid with high confidence."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(), PARAMS)
        assert result.valid is True
        assert result.is_full_range is False
        assert result.confidence == Confidence.HIGH
        assert result.balance_ratio == Decimal("0.5")
        assert result.expected_ratio == Decimal("0.5")
        assert result.details.price_at_creation == Decimal("1")

    def test_imbalanced_rejected_medium(self):
        """A deviation up to twice the tolerance is rejected with medium confidence."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(amount1=Decimal("70")), PARAMS)
        assert result.valid is False
        assert result.confidence == Confidence.MEDIUM
        assert result.balance_ratio == Decimal("0.588235")
        assert result.expected_ratio == Decimal("0.5")
        assert result.tolerance == Decimal("0.05")
        assert result.details.deviation == Decimal("0.088235")
        assert "Imbalanced" in result.reason

    def test_heavily_imbalanced_rejected_low(self):
        """A deviation beyond twice the tolerance is rejected with low confidence."""
        validator, _, _ = make_validator()
        result = validator.validate(make_submission(amount1=Decimal("20")), PARAMS)
        assert result.valid is False
        assert result.confidence == Confidence.LOW
        assert result.balance_ratio == Decimal("0.833333")

    def test_latest_price_before_creation_used(self):
        """Prices recorded after creation are ignored."""
        validator, market, _ = make_validator()
        market.record_price(POOL, CREATED + timedelta(hours=1), Decimal("3"))
        result = validator.validate(make_submission(), PARAMS)
        assert result.details.price_at_creation == Decimal("1")

    def test_naive_price_timestamps_rejected(self):
        """Price history only accepts timezone-aware timestamps."""
        _, market, _ = make_validator()
        with pytest.raises(ValidationError):
            market.record_price(POOL, datetime(2026, 7, 4, 11, 0), Decimal("2"))
        with pytest.raises(ValidationError):
            market.price_at(POOL, datetime(2026, 7, 4, 12, 0))
        assert market.price_at(POOL, CREATED) == Decimal("1")

    def test_expected_share_single_sided(self):
        """Outside its bounds a position holds a single token."""
        assert expected_token0_share(Decimal("0.1"), Decimal("0.25"), Decimal("4")) == Decimal("1")
        assert expected_token0_share(Decimal("5"), Decimal("0.25"), Decimal("4")) == Decimal("0")

    def test_assess_balance_ratio_pure(self):
        """The ratio heuristic depends only on its inputs."""
        assessment = assess_balance_ratio(
            Decimal("1"), Decimal("100"), Decimal("100"), Decimal("0.25"), Decimal("4"), Decimal("0.05"),
        )
        assert assessment.within_tolerance is True
        assert assessment.deviation == Decimal("0")


class TestMissingPrice:
    """Tests for missing historical prices."""

    def test_fail_closed_by_default(self):
        """Without a price at creation the position is rejected."""
        validator, _, _ = make_validator(with_price=False)
        result = validator.validate(make_submission(), PARAMS)
        assert result.valid is False
        assert result.confidence == Confidence.LOW
        assert "fail-closed" in result.reason

    def test_fail_open(self):
        """Under fail-open the position is accepted with low confidence."""
        validator, _, _ = make_validator(policy=MissingPricePolicy.FAIL_OPEN, with_price=False)
        result = validator.validate(make_submission(), PARAMS)
        assert result.valid is True
        assert result.confidence == Confidence.LOW

    def test_outage_retried_with_backoff(self):
        """An unreachable source is retried with growing delays, then the policy applies."""
        validator, market, sleeps = make_validator()
        market.offline = True
        result = validator.validate(make_submission(), PARAMS)
        assert result.valid is False
        assert sleeps == [0.01, 0.02]

    def test_recovers_within_attempts(self):
        """A transient outage is absorbed by the retry."""
        validator, market, sleeps = make_validator()
        market.offline = True

        def recover(delay):
            sleeps.append(delay)
            market.offline = False

        validator._sleep = recover
        result = validator.validate(make_submission(), PARAMS)
        assert result.valid is True
        assert sleeps == [0.01]


class TestSummary:
    """Tests for batch validation summaries."""

    def test_summarize(self):
        """Counts valid, invalid and full-range results by confidence."""
        validator, _, _ = make_validator()
        results = validator.validate_many(
            [
                make_submission(id="a"),
                make_submission(id="b", amount1=Decimal("20")),
                make_submission(id="c", price_range_lower=Decimal("0.0001"), price_range_upper=Decimal("1000000")),
            ],
            PARAMS,
        )
        summary = summarize(results)
        assert summary.total == 3
        assert summary.valid == 2
        assert summary.invalid == 1
        assert summary.full_range == 1
        assert summary.confidence_breakdown == {"high": 2, "medium": 0, "low": 1}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
