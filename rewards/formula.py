"""
Reward formula.

    R_u = (L_u / L_T) * (1 + (D_u / P) * b_time) * IRM * FRB * B

L_u   user liquidity (USD), L_T total pool liquidity (USD)
D_u   days of unbroken eligible participation, P program duration (days)
b_time time boost coefficient
IRM   in-range multiplier in [0.7, 1.0]
FRB   full range bonus (1.0 unless the position is full range)
B     daily budget

All arithmetic is Decimal; amounts are rounded down to 8 places so that a
sum of rounded amounts never exceeds the unrounded total.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Union

from core.errors import ValidationError
from core.logging import get_logger
from program.models import FormulaParameters, ProgramConfig, quantize_amount

from .models import RewardBreakdown

log = get_logger(__name__)

Number = Union[Decimal, int, float, str]

IN_RANGE_FLOOR = Decimal("0.7")
_ONE = Decimal(1)
_ZERO = Decimal(0)


def to_decimal(name: str, value: Number) -> Decimal:
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        d = None
    if d is None or not d.is_finite() or d < 0:
        log.warning("formula_input_rejected", field=name, value=str(value))
        raise ValidationError(f"{name} must be a finite, non-negative number", details={name: str(value)})
    return d


def in_range_multiplier(time_in_range_ratio: Number) -> Decimal:
    """0.7 for a period spent entirely out of range, 1.0 when always in range."""
    ratio = to_decimal("time_in_range_ratio", time_in_range_ratio)
    if ratio > _ONE:
        raise ValidationError("time_in_range_ratio must be within [0, 1]",
                              details={"time_in_range_ratio": str(ratio)})
    return IN_RANGE_FLOOR + (_ONE - IN_RANGE_FLOOR) * ratio


@dataclass(frozen=True)
class RewardInputs:
    user_liquidity_usd: Number
    pool_total_liquidity_usd: Number
    days_active: int
    in_range_multiplier: Number = _ONE
    is_full_range: bool = False


class FormulaEngine:
    def compute(
        self,
        inputs: RewardInputs,
        params: FormulaParameters,
        program: ProgramConfig,
    ) -> RewardBreakdown:
        user = to_decimal("user_liquidity_usd", inputs.user_liquidity_usd)
        pool = to_decimal("pool_total_liquidity_usd", inputs.pool_total_liquidity_usd)
        days = to_decimal("days_active", inputs.days_active)
        irm = to_decimal("in_range_multiplier", inputs.in_range_multiplier)

        if not IN_RANGE_FLOOR <= irm <= _ONE:
            log.warning("formula_input_rejected", field="in_range_multiplier", value=str(irm))
            raise ValidationError("in_range_multiplier must be within [0.7, 1.0]",
                                  details={"in_range_multiplier": str(irm)})
        if pool > 0 and user > pool:
            log.warning("formula_input_rejected", field="user_liquidity_usd", value=str(user), pool=str(pool))
            raise ValidationError("user liquidity exceeds total pool liquidity",
                                  details={"user_liquidity_usd": str(user), "pool_total_liquidity_usd": str(pool)})

        duration = Decimal(program.program_duration_days)
        boosted_days = duration + days * params.time_boost_coefficient
        bonus = params.full_range_bonus if inputs.is_full_range else _ONE
        budget = program.daily_budget

        share = user / pool if pool > 0 else _ZERO
        time_factor = boosted_days / duration
        # single division keeps terminating results exact, e.g. 30/90 days
        if pool > 0:
            amount = quantize_amount(user * boosted_days * irm * bonus * budget / (pool * duration))
        else:
            amount = quantize_amount(_ZERO)
        return RewardBreakdown(
            liquidity_share=share,
            time_factor=time_factor,
            in_range_multiplier=irm,
            full_range_bonus=bonus,
            daily_budget=budget,
            amount=amount,
        )

    def compute_amount(self, inputs: RewardInputs, params: FormulaParameters, program: ProgramConfig) -> Decimal:
        return self.compute(inputs, params, program).amount

    def estimate(
        self,
        user_liquidity_usd: Number,
        pool_total_liquidity_usd: Number,
        days_active: int,
        time_in_range_ratio: Number,
        is_full_range: bool,
        params: FormulaParameters,
        program: ProgramConfig,
    ) -> RewardBreakdown:
        """Daily reward a position would earn from its latest metrics.

        Same formula as ``compute`` but takes the raw time-in-range ratio
        instead of a precomputed multiplier.
        """
        inputs = RewardInputs(
            user_liquidity_usd=user_liquidity_usd,
            pool_total_liquidity_usd=pool_total_liquidity_usd,
            days_active=days_active,
            in_range_multiplier=in_range_multiplier(time_in_range_ratio),
            is_full_range=is_full_range,
        )
        return self.compute(inputs, params, program)

    def scale_to_budget(self, entitlements: Mapping[str, Decimal], daily_budget: Decimal) -> dict[str, Decimal]:
        """Pro-rata scaling: when the naive sum exceeds the budget every amount
        is multiplied by budget / sum."""
        total = sum(entitlements.values(), _ZERO)
        if total <= daily_budget:
            return {k: quantize_amount(v) for k, v in entitlements.items()}

        factor = daily_budget / total
        scaled = {k: quantize_amount(v * factor) for k, v in entitlements.items()}
        log.info("rewards_scaled_to_budget", naive_total=str(total), daily_budget=str(daily_budget),
                 factor=str(factor.quantize(Decimal("0.000001"))), participants=len(entitlements))
        return scaled
