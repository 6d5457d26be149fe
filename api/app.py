"""
HTTP surface for the LP rewards engine.

The caller's identity is taken from the ``X-Actor`` header; role checks
happen inside the services, so every route is a thin adapter.

Run locally with:

    python -m api.app
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel, Field

from core.clock import Clock, utcnow
from core.errors import (
    AuthorizationError,
    CapacityError,
    DataUnavailableError,
    NotFoundError,
    RewardsError,
    StateConflictError,
    ValidationError,
)
from core.logging import bind_context, clear_context, get_logger, setup_logging
from core.settings import Settings, get_settings
from ledger.models import CommandEnvelope, CommandResponse, DistributionStatus, RewardLot, TokenRecord, TreasuryBalance
from ledger.service import LedgerService
from program.models import (
    ConfigSnapshot,
    ConfigVersion,
    FormulaParameters,
    ProgramConfig,
    UpdateFormulaParametersRequest,
    UpdateProgramConfigRequest,
)
from program.store import ConfigStore
from reconciliation.lease import InMemoryLease
from reconciliation.models import (
    BulkRegisterRequest,
    BulkRegistrationResult,
    EligibilityView,
    PeriodRunReport,
    RegistrationResult,
)
from reconciliation.service import ReconciliationService
from rewards.formula import FormulaEngine
from rewards.market_data import InMemoryMarketData, RetryPolicy
from rewards.models import PoolSnapshot, PositionMetrics, PositionSubmission
from rewards.validator import PositionValidator

log = get_logger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CapacityError: status.HTTP_409_CONFLICT,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    StateConflictError: status.HTTP_409_CONFLICT,
    DataUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    NotFoundError: status.HTTP_404_NOT_FOUND,
}


class PositionMetricsUpdate(BaseModel):
    value_usd: Decimal = Field(..., ge=0, allow_inf_nan=False)
    time_in_range_ratio: Decimal = Field(default=Decimal("1"), ge=0, le=1)
    observed_at: Optional[AwareDatetime] = None


class PriceObservation(BaseModel):
    at: AwareDatetime
    price: Decimal = Field(..., gt=0, allow_inf_nan=False)


@dataclass
class Services:
    settings: Settings
    config: ConfigStore
    market_data: InMemoryMarketData
    validator: PositionValidator
    engine: FormulaEngine
    ledger: LedgerService
    reconciliation: ReconciliationService


def build_services(settings: Settings, clock: Clock = utcnow) -> Services:
    program = ProgramConfig(
        total_allocation=settings.total_allocation,
        program_duration_days=settings.program_duration_days,
        program_start=settings.program_start or clock().date(),
        treasury_address=settings.treasury_address,
    )
    formula = FormulaParameters(
        time_boost_coefficient=settings.time_boost_coefficient,
        full_range_bonus=settings.full_range_bonus,
        minimum_position_value_usd=settings.minimum_position_value_usd,
        lock_period_days=settings.lock_period_days,
        balance_ratio_tolerance=settings.balance_ratio_tolerance,
    )
    config = ConfigStore(program, formula, admins=[settings.owner], clock=clock)
    market_data = InMemoryMarketData()
    validator = PositionValidator(
        settings.primary_token_address,
        market_data,
        full_range_lower=settings.full_range_lower,
        full_range_upper=settings.full_range_upper,
        full_range_tolerance=settings.full_range_tolerance,
        missing_price_policy=settings.missing_price_policy,
        retry=RetryPolicy(attempts=settings.price_retry_attempts, base_delay=settings.price_retry_base_delay),
        clock=clock,
    )
    engine = FormulaEngine()
    ledger = LedgerService(
        config,
        owner=settings.owner,
        primary_token=settings.primary_token_address,
        primary_symbol=settings.primary_token_symbol,
        operators=[*settings.operators, settings.reconciler],
        clock=clock,
    )
    reconciliation = ReconciliationService(
        config,
        validator,
        engine,
        ledger,
        market_data,
        operator=settings.reconciler,
        lease=InMemoryLease(ttl_seconds=settings.lease_ttl_seconds, clock=clock),
        clock=clock,
    )
    return Services(settings, config, market_data, validator, engine, ledger, reconciliation)


def create_app(settings: Optional[Settings] = None, clock: Clock = utcnow) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(level=settings.log_level, log_format=settings.log_format)
    services = build_services(settings, clock)

    app = FastAPI(
        title="LP Rewards API",
        description="Liquidity-provider reward accrual, time-locked lots and treasury custody",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def actor_context(request: Request, call_next):
        bind_context(actor=request.headers.get("x-actor"), path=request.url.path)
        try:
            return await call_next(request)
        finally:
            clear_context("actor", "path")

    @app.exception_handler(RewardsError)
    async def rewards_error_handler(request: Request, exc: RewardsError) -> JSONResponse:
        code = next((c for cls, c in ERROR_STATUS.items() if isinstance(exc, cls)), status.HTTP_400_BAD_REQUEST)
        return JSONResponse(status_code=code, content=exc.to_dict())

    def require_operator(actor: str) -> None:
        if not services.ledger.is_operator(actor):
            log.warning("operator_call_denied", actor=actor)
            raise AuthorizationError("Operator role required", actor=actor, required_role="operator")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "lp-rewards", "paused": services.ledger.is_paused}

    # ---------------------------------------------------------------- config

    @app.get("/config", response_model=ConfigSnapshot, tags=["Config"])
    def get_config() -> ConfigSnapshot:
        return services.config.get()

    @app.get("/config/history", response_model=list[ConfigVersion], tags=["Config"])
    def get_config_history() -> list[ConfigVersion]:
        return services.config.history()

    @app.put("/config/program", response_model=ConfigVersion, tags=["Config"])
    def update_program_config(
        request: UpdateProgramConfigRequest,
        actor: str = Header(..., alias="X-Actor"),
    ) -> ConfigVersion:
        return services.config.set_program_config(actor, request.config, request.reason)

    @app.put("/config/formula", response_model=ConfigVersion, tags=["Config"])
    def update_formula_parameters(
        request: UpdateFormulaParametersRequest,
        actor: str = Header(..., alias="X-Actor"),
    ) -> ConfigVersion:
        return services.config.set_formula_parameters(actor, request.parameters, request.reason)

    # ------------------------------------------------------------- positions

    @app.post("/positions", response_model=RegistrationResult, status_code=status.HTTP_201_CREATED,
              tags=["Positions"])
    def register_position(submission: PositionSubmission) -> RegistrationResult:
        return services.reconciliation.register_position(submission)

    @app.post("/positions/bulk", response_model=BulkRegistrationResult, tags=["Positions"])
    def bulk_register_positions(request: BulkRegisterRequest) -> BulkRegistrationResult:
        return services.reconciliation.bulk_register(request.positions)

    @app.get("/owners/{owner}/positions", response_model=list[EligibilityView], tags=["Positions"])
    def get_owner_positions(owner: str) -> list[EligibilityView]:
        return services.reconciliation.get_eligible_positions(owner)

    @app.post("/periods/{day}/run", response_model=PeriodRunReport, tags=["Periods"])
    def run_period(day: date, actor: str = Header(..., alias="X-Actor")) -> PeriodRunReport:
        require_operator(actor)
        return services.reconciliation.run_accounting_period(day)

    # ---------------------------------------------------------------- ledger

    @app.post("/ledger/commands", response_model=CommandResponse, tags=["Ledger"])
    def execute_command(envelope: CommandEnvelope, actor: str = Header(..., alias="X-Actor")) -> CommandResponse:
        return services.ledger.execute(actor, envelope.command)

    @app.get("/ledger/tokens", response_model=list[TokenRecord], tags=["Ledger"])
    def get_tokens() -> list[TokenRecord]:
        return services.ledger.get_supported_tokens()

    @app.get("/ledger/balances", response_model=list[TreasuryBalance], tags=["Ledger"])
    def get_balances() -> list[TreasuryBalance]:
        return services.ledger.get_balances()

    @app.get("/ledger/distribution/{day}", response_model=DistributionStatus, tags=["Ledger"])
    def get_distribution(day: date) -> DistributionStatus:
        return services.ledger.get_distribution_status(day)

    @app.get("/owners/{owner}/lots", response_model=list[RewardLot], tags=["Ledger"])
    def get_owner_lots(owner: str, claimable: bool = False) -> list[RewardLot]:
        if claimable:
            return services.ledger.get_claimable_lots(owner)
        return services.ledger.get_lots(owner)

    # ----------------------------------------------------------- market data

    @app.put("/market/pool", response_model=PoolSnapshot, tags=["Market"])
    def put_pool_snapshot(snapshot: PoolSnapshot, actor: str = Header(..., alias="X-Actor")) -> PoolSnapshot:
        require_operator(actor)
        services.market_data.set_pool_snapshot(snapshot)
        return snapshot

    @app.put("/market/positions/{position_id}", response_model=PositionMetrics, tags=["Market"])
    def put_position_metrics(
        position_id: str,
        update: PositionMetricsUpdate,
        actor: str = Header(..., alias="X-Actor"),
    ) -> PositionMetrics:
        require_operator(actor)
        metrics = PositionMetrics(
            position_id=position_id,
            value_usd=update.value_usd,
            time_in_range_ratio=update.time_in_range_ratio,
            observed_at=update.observed_at or clock(),
        )
        services.market_data.set_position_metrics(metrics)
        return metrics

    @app.post("/market/pools/{pool_address}/prices", status_code=status.HTTP_204_NO_CONTENT, tags=["Market"])
    def record_pool_price(
        pool_address: str,
        observation: PriceObservation,
        actor: str = Header(..., alias="X-Actor"),
    ) -> None:
        require_operator(actor)
        services.market_data.record_price(pool_address, observation.at, observation.price)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
