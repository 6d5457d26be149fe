"""
Process configuration, read from the environment (optionally ``.env``) via
pydantic-settings. All variables use the ``LPR_`` prefix, e.g.

    LPR_OWNER=admin
    LPR_OPERATORS=ops-1,ops-2
    LPR_PRIMARY_TOKEN_ADDRESS=0x5d0d...
    LPR_TOTAL_ALLOCATION=500000
    LPR_PROGRAM_DURATION_DAYS=90
    LPR_MISSING_PRICE_POLICY=fail_closed

These values seed the configuration store and the custodian at startup.
Program parameters changed later through the admin API live in the
configuration store, not here.
"""

from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(val) -> List[str]:
    if val is None:
        return []
    if isinstance(val, list):
        return [str(x) for x in val]
    return [x.strip() for x in str(val).split(",") if x.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LPR_", env_file=".env", extra="ignore")

    # Identities
    owner: str = "admin"
    operators: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["operator"])
    reconciler: str = "reconciler"

    # Tokens / custody
    primary_token_address: str = "0x5d0dd05bb095fdd6af4865a1adf97c39c85ad2d8"
    primary_token_symbol: str = "KILT"
    treasury_address: str = "0x0000000000000000000000000000000000000001"

    # Initial program values
    total_allocation: Decimal = Decimal("500000")
    program_duration_days: int = 90
    program_start: Optional[date] = None

    # Initial formula values
    time_boost_coefficient: Decimal = Decimal("0.6")
    full_range_bonus: Decimal = Decimal("1.2")
    minimum_position_value_usd: Decimal = Decimal("10")
    lock_period_days: int = 7
    balance_ratio_tolerance: Decimal = Decimal("0.05")

    # Validator
    full_range_lower: Decimal = Decimal("0.0001")
    full_range_upper: Decimal = Decimal("1000000")
    full_range_tolerance: Decimal = Decimal("0.01")
    missing_price_policy: str = "fail_closed"
    price_retry_attempts: int = 3
    price_retry_base_delay: float = 0.2

    # Reconciliation
    lease_ttl_seconds: int = 300

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("operators", mode="before")
    @classmethod
    def _coerce_operators(cls, v):
        return _parse_list(v)

    @field_validator("missing_price_policy")
    @classmethod
    def _check_policy(cls, v: str) -> str:
        v = v.lower()
        if v not in ("fail_closed", "fail_open"):
            raise ValueError("missing_price_policy must be fail_closed or fail_open")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
