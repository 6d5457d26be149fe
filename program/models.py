from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator

TOKEN_QUANTUM = Decimal("0.00000001")


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)


class ProgramConfig(BaseModel):
    total_allocation: Decimal = Field(..., gt=0, description="Total treasury tokens for the program")
    program_duration_days: int = Field(..., gt=0)
    program_start: date
    treasury_address: str
    active: bool = True

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "total_allocation": "500000",
            "program_duration_days": 90,
            "program_start": "2026-07-01",
            "treasury_address": "0x0000000000000000000000000000000000000001",
            "active": True,
        }
    })

    @computed_field
    @property
    def daily_budget(self) -> Decimal:
        return quantize_amount(self.total_allocation / Decimal(self.program_duration_days))

    @computed_field
    @property
    def program_end(self) -> date:
        return self.program_start + timedelta(days=self.program_duration_days)

    def is_running(self, day: date) -> bool:
        return self.active and self.program_start <= day < self.program_end


class FormulaParameters(BaseModel):
    time_boost_coefficient: Decimal = Field(..., ge=0)
    full_range_bonus: Decimal = Field(..., gt=1)
    minimum_position_value_usd: Decimal = Field(..., ge=0)
    lock_period_days: int = Field(..., ge=0)
    balance_ratio_tolerance: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1)

    model_config = ConfigDict(frozen=True)

    @field_validator("time_boost_coefficient", "full_range_bonus", "minimum_position_value_usd", "balance_ratio_tolerance")
    @classmethod
    def _finite(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("must be a finite number")
        return v


class ConfigVersion(BaseModel):
    version: int
    effective_from: date
    program: ProgramConfig
    formula: FormulaParameters
    changed_by: str
    reason: str
    changed_at: datetime

    model_config = ConfigDict(frozen=True)


class UpdateProgramConfigRequest(BaseModel):
    config: ProgramConfig
    reason: str = Field(..., min_length=1, description="Why the change is made (audited)")


class UpdateFormulaParametersRequest(BaseModel):
    parameters: FormulaParameters
    reason: str = Field(..., min_length=1)


class ConfigSnapshot(BaseModel):
    current: ConfigVersion
    pending: Optional[ConfigVersion] = None
