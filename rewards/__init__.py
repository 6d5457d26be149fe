"""
Reward computation: position eligibility, the daily reward formula and the
market-data inputs both depend on.
"""

from .models import (
    PositionStatus,
    Confidence,
    PositionSubmission,
    Position,
    ValidationResult,
    PoolSnapshot,
    PositionMetrics,
    RewardBreakdown,
)
from .formula import FormulaEngine, RewardInputs, in_range_multiplier
from .market_data import InMemoryMarketData, RetryPolicy, fetch_with_backoff
from .validator import (
    PositionValidator,
    MissingPricePolicy,
    assess_balance_ratio,
    is_full_range,
    summarize,
)

__all__ = [
    "PositionStatus",
    "Confidence",
    "PositionSubmission",
    "Position",
    "ValidationResult",
    "PoolSnapshot",
    "PositionMetrics",
    "RewardBreakdown",
    "FormulaEngine",
    "RewardInputs",
    "in_range_multiplier",
    "InMemoryMarketData",
    "RetryPolicy",
    "fetch_with_backoff",
    "PositionValidator",
    "MissingPricePolicy",
    "assess_balance_ratio",
    "is_full_range",
    "summarize",
]
