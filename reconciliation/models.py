from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from rewards.models import (
    Confidence,
    PositionStatus,
    RewardBreakdown,
    ValidationDetails,
    ValidationResult,
)


class RegistrationOutcome(str, Enum):
    REGISTERED = "REGISTERED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class OwnerGrantStatus(str, Enum):
    GRANTED = "GRANTED"
    ALREADY_GRANTED = "ALREADY_GRANTED"
    DEFERRED = "DEFERRED"
    FAILED = "FAILED"
    ZERO = "ZERO"


class RegistrationResult(BaseModel):
    position_id: Optional[str] = None
    outcome: RegistrationOutcome
    status: Optional[PositionStatus] = None
    validation: Optional[ValidationResult] = None
    message: str
    error: Optional[dict] = None


class BulkRegisterRequest(BaseModel):
    positions: list[Any] = Field(..., min_length=1, max_length=500)


class BulkRegistrationResult(BaseModel):
    items: list[RegistrationResult]
    registered: int
    already_registered: int
    rejected: int
    failed: int


class PositionAccrual(BaseModel):
    position_id: str
    owner: str
    days_active: int
    breakdown: RewardBreakdown


class PeriodPlan(BaseModel):
    day: date
    config_version: int
    created_at: datetime
    naive_total: Decimal
    daily_budget: Decimal
    entitlements: dict[str, Decimal]
    accruals: list[PositionAccrual]
    skipped: dict[str, str] = Field(default_factory=dict)

    @property
    def scaled(self) -> bool:
        return self.naive_total > self.daily_budget


class OwnerGrantItem(BaseModel):
    owner: str
    amount: Decimal
    status: OwnerGrantStatus
    lot_id: Optional[int] = None
    error: Optional[dict] = None


class PeriodRunReport(BaseModel):
    day: date
    plan_created: bool = False
    skipped_reason: Optional[str] = None
    items: list[OwnerGrantItem] = Field(default_factory=list)
    granted_total: Decimal = Decimal("0")

    def count(self, status: OwnerGrantStatus) -> int:
        return sum(1 for i in self.items if i.status == status)

    @property
    def complete(self) -> bool:
        return all(i.status in (OwnerGrantStatus.GRANTED, OwnerGrantStatus.ALREADY_GRANTED, OwnerGrantStatus.ZERO)
                   for i in self.items)


class EligibilityView(BaseModel):
    position_id: str
    owner: str
    status: PositionStatus
    reason: Optional[str] = None
    confidence: Optional[Confidence] = None
    is_full_range: bool = False
    balance_ratio: Optional[Decimal] = None
    expected_ratio: Optional[Decimal] = None
    tolerance: Optional[Decimal] = None
    details: Optional[ValidationDetails] = None
    days_active: int = 0
    estimated_daily_reward: Optional[Decimal] = None
    lock_period_days: int


__all__ = [
    "RegistrationOutcome",
    "OwnerGrantStatus",
    "RegistrationResult",
    "BulkRegisterRequest",
    "BulkRegistrationResult",
    "PositionAccrual",
    "PeriodPlan",
    "OwnerGrantItem",
    "PeriodRunReport",
    "EligibilityView",
]
