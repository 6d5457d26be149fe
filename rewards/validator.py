"""
Position eligibility.

A position qualifies when it holds the reward token, is worth at least the
configured minimum, and is in range at the current pool price. Full-range
positions pass on a fast path. Concentrated positions are checked against
the price at creation: the token0 value share they were opened with must
match the share the concentrated-liquidity curve implies for their bounds,
within the configured tolerance.

The ratio heuristic (``assess_balance_ratio``) is a pure function of its
inputs so it can be exercised without any data provider.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from core.clock import Clock, utcnow
from core.errors import DataUnavailableError
from core.logging import get_logger
from program.models import FormulaParameters

from .market_data import PriceHistorySource, RetryPolicy, fetch_with_backoff
from .models import Confidence, PositionSubmission, ValidationDetails, ValidationResult

log = get_logger(__name__)

FULL_RANGE_LOWER = Decimal("0.0001")
FULL_RANGE_UPPER = Decimal("1000000")
FULL_RANGE_TOLERANCE = Decimal("0.01")

_ONE = Decimal(1)
_ZERO = Decimal(0)
_RATIO_PLACES = Decimal("0.000001")


class MissingPricePolicy(str, Enum):
    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


@dataclass(frozen=True)
class BalanceAssessment:
    balance_ratio: Decimal
    expected_ratio: Decimal
    deviation: Decimal
    tolerance: Decimal
    within_tolerance: bool
    confidence: Confidence


def expected_token0_share(price: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    """Share of position value held in token0 when opened at ``price``.

    For liquidity L on [lower, upper] at price P (token1 per token0):
    amount0 = L(1/sqrt(P) - 1/sqrt(upper)), amount1 = L(sqrt(P) - sqrt(lower)).
    Outside the bounds the position is single-sided.
    """
    if price <= lower:
        return _ONE
    if price >= upper:
        return _ZERO
    sp, sa, sb = price.sqrt(), lower.sqrt(), upper.sqrt()
    value0 = sp - price / sb
    value1 = sp - sa
    return value0 / (value0 + value1)


def assess_balance_ratio(
    price_at_creation: Decimal,
    amount0: Decimal,
    amount1: Decimal,
    lower: Decimal,
    upper: Decimal,
    tolerance: Decimal,
) -> BalanceAssessment:
    value0 = amount0 * price_at_creation
    total = value0 + amount1
    expected = expected_token0_share(price_at_creation, lower, upper).quantize(_RATIO_PLACES)
    if total <= 0:
        actual = _ZERO
    else:
        actual = (value0 / total).quantize(_RATIO_PLACES)

    deviation = abs(actual - expected)
    if deviation <= tolerance:
        confidence = Confidence.HIGH
    elif deviation <= tolerance * 2:
        confidence = Confidence.MEDIUM
    else:
        confidence = Confidence.LOW

    return BalanceAssessment(
        balance_ratio=actual,
        expected_ratio=expected,
        deviation=deviation,
        tolerance=tolerance,
        within_tolerance=deviation <= tolerance,
        confidence=confidence,
    )


def is_full_range(
    lower: Decimal,
    upper: Decimal,
    canonical_lower: Decimal = FULL_RANGE_LOWER,
    canonical_upper: Decimal = FULL_RANGE_UPPER,
    tolerance: Decimal = FULL_RANGE_TOLERANCE,
) -> bool:
    return lower <= canonical_lower * (_ONE + tolerance) and upper >= canonical_upper * (_ONE - tolerance)


class ValidationSummary(BaseModel):
    total: int
    valid: int
    invalid: int
    full_range: int
    confidence_breakdown: dict[str, int]


class PositionValidator:
    def __init__(
        self,
        reward_token: str,
        price_history: PriceHistorySource,
        *,
        full_range_lower: Decimal = FULL_RANGE_LOWER,
        full_range_upper: Decimal = FULL_RANGE_UPPER,
        full_range_tolerance: Decimal = FULL_RANGE_TOLERANCE,
        missing_price_policy: MissingPricePolicy = MissingPricePolicy.FAIL_CLOSED,
        retry: RetryPolicy = RetryPolicy(),
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.reward_token = reward_token
        self.price_history = price_history
        self.full_range_lower = full_range_lower
        self.full_range_upper = full_range_upper
        self.full_range_tolerance = full_range_tolerance
        self.missing_price_policy = MissingPricePolicy(missing_price_policy)
        self.retry = retry
        self._clock = clock
        self._sleep = sleep

    def validate(
        self,
        position: PositionSubmission,
        params: FormulaParameters,
        pool_price: Optional[Decimal] = None,
    ) -> ValidationResult:
        current_price = position.current_pool_price if pool_price is None else pool_price
        tolerance = params.balance_ratio_tolerance
        details = ValidationDetails(
            range_lower=position.price_range_lower,
            range_upper=position.price_range_upper,
            current_price=current_price,
            minimum_value_usd=params.minimum_position_value_usd,
            value_usd=position.value_usd,
        )

        if not position.includes_token(self.reward_token):
            return self._result(False, "Position does not include the reward token", Confidence.HIGH, tolerance, details)

        if position.value_usd < params.minimum_position_value_usd:
            return self._result(
                False,
                f"Position value ${position.value_usd} is below the ${params.minimum_position_value_usd} minimum",
                Confidence.HIGH, tolerance, details,
            )

        if not position.is_in_range(current_price):
            return self._result(False, "Position is out of range at the current pool price",
                                Confidence.HIGH, tolerance, details)

        if is_full_range(position.price_range_lower, position.price_range_upper,
                         self.full_range_lower, self.full_range_upper, self.full_range_tolerance):
            return self._result(
                True, "Full range position - automatically valid", Confidence.HIGH, tolerance, details,
                is_full_range=True, balance_ratio=Decimal("0.5"), expected_ratio=Decimal("0.5"),
            )

        return self._validate_concentrated(position, tolerance, details)

    def _validate_concentrated(
        self,
        position: PositionSubmission,
        tolerance: Decimal,
        details: ValidationDetails,
    ) -> ValidationResult:
        try:
            price = fetch_with_backoff(
                self.price_history.price_at, position.pool_address, position.created_at,
                policy=self.retry, sleep=self._sleep,
            )
        except DataUnavailableError as e:
            log.warning("historical_price_unreachable", position_id=position.id, error=e.message)
            price = None

        if price is None:
            return self._missing_price(position, tolerance, details)

        assessment = assess_balance_ratio(
            price, position.amount0, position.amount1,
            position.price_range_lower, position.price_range_upper, tolerance,
        )
        details = details.model_copy(update={"price_at_creation": price, "deviation": assessment.deviation})
        share = assessment.balance_ratio * 100
        split = f"{share:.1f}% / {100 - share:.1f}%"

        if assessment.within_tolerance:
            reason = f"Balanced position at creation: {split}"
        else:
            reason = (f"Imbalanced position at creation: {split}, expected "
                      f"{assessment.expected_ratio * 100:.1f}% token0 (tolerance {tolerance * 100:.1f}%)")
            log.info("position_ratio_rejected", position_id=position.id,
                     balance_ratio=str(assessment.balance_ratio),
                     expected_ratio=str(assessment.expected_ratio),
                     deviation=str(assessment.deviation))

        return self._result(
            assessment.within_tolerance, reason, assessment.confidence, tolerance, details,
            balance_ratio=assessment.balance_ratio, expected_ratio=assessment.expected_ratio,
        )

    def _missing_price(self, position, tolerance, details) -> ValidationResult:
        if self.missing_price_policy == MissingPricePolicy.FAIL_OPEN:
            return self._result(True, "Historical price unavailable - accepted under fail-open policy",
                                Confidence.LOW, tolerance, details)
        return self._result(False, "Historical price unavailable - rejected under fail-closed policy",
                            Confidence.LOW, tolerance, details)

    def _result(self, valid, reason, confidence, tolerance, details, *, is_full_range=False,
                balance_ratio=None, expected_ratio=None) -> ValidationResult:
        return ValidationResult(
            valid=valid,
            reason=reason,
            confidence=confidence,
            is_full_range=is_full_range,
            balance_ratio=balance_ratio,
            expected_ratio=expected_ratio,
            tolerance=tolerance,
            details=details,
            checked_at=self._clock(),
        )

    def validate_many(
        self,
        positions: Iterable[PositionSubmission],
        params: FormulaParameters,
        pool_price: Optional[Decimal] = None,
    ) -> dict[str, ValidationResult]:
        return {p.id: self.validate(p, params, pool_price) for p in positions}


def summarize(results: dict[str, ValidationResult]) -> ValidationSummary:
    breakdown = {c.value: 0 for c in Confidence}
    valid = full_range = 0
    for result in results.values():
        breakdown[result.confidence.value] += 1
        if result.valid:
            valid += 1
        if result.is_full_range:
            full_range += 1
    return ValidationSummary(
        total=len(results),
        valid=valid,
        invalid=len(results) - valid,
        full_range=full_range,
        confidence_breakdown=breakdown,
    )
