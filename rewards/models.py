from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import AwareDatetime, BaseModel, Field, ConfigDict, model_validator


class PositionStatus(str, Enum):
    UNREGISTERED = "UNREGISTERED"
    PENDING_VALIDATION = "PENDING_VALIDATION"
    ELIGIBLE = "ELIGIBLE"
    REJECTED = "REJECTED"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PositionSubmission(BaseModel):
    id: str = Field(..., min_length=1, description="Position NFT token id")
    owner: str = Field(..., min_length=1)
    pool_address: str
    token0: str
    token1: str
    amount0: Decimal = Field(..., ge=0, description="token0 deposited at creation")
    amount1: Decimal = Field(..., ge=0, description="token1 deposited at creation")
    value_usd: Decimal = Field(..., ge=0)
    price_range_lower: Decimal = Field(..., ge=0)
    price_range_upper: Decimal = Field(..., gt=0)
    current_pool_price: Decimal = Field(..., gt=0)
    fee_tier: int = Field(default=3000, ge=0)
    liquidity_amount: Decimal = Field(default=Decimal("0"), ge=0)
    created_at: AwareDatetime

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "id": "3987451",
            "owner": "0x9f2a000000000000000000000000000000000001",
            "pool_address": "0x82da478b1382b951cbad01beb9ed459cdb16458e",
            "token0": "0x5d0dd05bb095fdd6af4865a1adf97c39c85ad2d8",
            "token1": "0x4200000000000000000000000000000000000006",
            "amount0": "52000",
            "amount1": "0.45",
            "value_usd": "2000",
            "price_range_lower": "0.0001",
            "price_range_upper": "1000000",
            "current_pool_price": "0.0185",
            "fee_tier": 3000,
            "liquidity_amount": "1250000000000",
            "created_at": "2026-07-04T12:00:00Z",
        }
    })

    @model_validator(mode="after")
    def _check_range(self) -> "PositionSubmission":
        for name in ("amount0", "amount1", "value_usd", "price_range_lower",
                     "price_range_upper", "current_pool_price", "liquidity_amount"):
            if not getattr(self, name).is_finite():
                raise ValueError(f"{name} must be a finite number")
        if self.price_range_upper <= self.price_range_lower:
            raise ValueError("price_range_upper must be greater than price_range_lower")
        return self

    def includes_token(self, token: str) -> bool:
        token = token.lower()
        return token in (self.token0.lower(), self.token1.lower())

    def is_in_range(self, price: Optional[Decimal] = None) -> bool:
        price = self.current_pool_price if price is None else price
        return self.price_range_lower <= price <= self.price_range_upper


class ValidationDetails(BaseModel):
    range_lower: Decimal
    range_upper: Decimal
    current_price: Decimal
    price_at_creation: Optional[Decimal] = None
    deviation: Optional[Decimal] = None
    minimum_value_usd: Optional[Decimal] = None
    value_usd: Optional[Decimal] = None


class ValidationResult(BaseModel):
    valid: bool
    reason: str
    confidence: Confidence
    is_full_range: bool = False
    balance_ratio: Optional[Decimal] = None
    expected_ratio: Optional[Decimal] = None
    tolerance: Decimal
    details: ValidationDetails
    checked_at: datetime

    model_config = ConfigDict(frozen=True)


class Position(BaseModel):
    submission: PositionSubmission
    status: PositionStatus
    validation: Optional[ValidationResult] = None
    registered_at: datetime
    eligible_since: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.submission.id

    @property
    def owner(self) -> str:
        return self.submission.owner


class PoolSnapshot(BaseModel):
    current_price: Decimal = Field(..., gt=0)
    volume_24h_usd: Decimal = Field(default=Decimal("0"), ge=0)
    total_liquidity_usd: Decimal = Field(..., ge=0)
    observed_at: AwareDatetime


class PositionMetrics(BaseModel):
    position_id: str
    value_usd: Decimal = Field(..., ge=0)
    time_in_range_ratio: Decimal = Field(default=Decimal("1"), ge=0, le=1)
    observed_at: AwareDatetime


class RewardBreakdown(BaseModel):
    liquidity_share: Decimal
    time_factor: Decimal
    in_range_multiplier: Decimal
    full_range_bonus: Decimal
    daily_budget: Decimal
    amount: Decimal
