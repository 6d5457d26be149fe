import threading
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Union
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from core.clock import Clock, utcnow
from core.errors import CapacityError, DataUnavailableError, NotFoundError, RewardsError, ValidationError
from core.logging import get_logger
from ledger.service import KeyedLocks, LedgerService
from program.models import ConfigVersion
from program.store import ConfigStore
from rewards.formula import FormulaEngine
from rewards.market_data import MarketDataSource
from rewards.models import Position, PositionStatus, PositionSubmission
from rewards.validator import PositionValidator

from .lease import GrantLease, InMemoryLease, held
from .models import (
    BulkRegistrationResult,
    EligibilityView,
    OwnerGrantItem,
    OwnerGrantStatus,
    PeriodPlan,
    PeriodRunReport,
    PositionAccrual,
    RegistrationOutcome,
    RegistrationResult,
)

log = get_logger(__name__)

_ZERO = Decimal("0")


def period_grant_key(day: date, owner: str) -> str:
    """Durable per-owner-per-period marker, recorded by the ledger with the grant."""
    return f"period:{day.isoformat()}:{owner}"


class InMemoryStorage:
    def __init__(self):
        self.positions: dict[str, dict] = {}
        self.participation: dict[str, set[date]] = {}
        self.period_plans: dict[date, PeriodPlan] = {}


class ReconciliationService:
    """
    Drives positions from registration to granted lots.

    Registration is idempotent by position id. Each accounting period is
    planned once (amounts per owner, scaled to the daily budget) and the plan
    is persisted before any grant is issued; grants carry a per-owner,
    per-period key so re-running a period after a crash only issues the
    grants that are still missing.
    """

    def __init__(
        self,
        config: ConfigStore,
        validator: PositionValidator,
        engine: FormulaEngine,
        ledger: LedgerService,
        market_data: MarketDataSource,
        operator: str,
        lease: Optional[GrantLease] = None,
        storage: Optional[InMemoryStorage] = None,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.validator = validator
        self.engine = engine
        self.ledger = ledger
        self.market_data = market_data
        self.operator = operator
        self.lease = lease or InMemoryLease(clock=clock)
        self.storage = storage or InMemoryStorage()
        self.instance_id = uuid4().hex[:8]
        self._clock = clock
        self._locks = KeyedLocks()
        self._plan_lock = threading.Lock()

    # ---------------------------------------------------------- registration

    def register_position(self, submission: PositionSubmission) -> RegistrationResult:
        with self._locks.hold(f"position:{submission.id}"):
            existing = self.storage.positions.get(submission.id)
            if existing is not None:
                position = Position(**existing)
                return RegistrationResult(
                    position_id=position.id,
                    outcome=RegistrationOutcome.ALREADY_REGISTERED,
                    status=position.status,
                    validation=position.validation,
                    message="Position already registered (idempotent return)",
                )

            now = self._clock()
            record = {
                "submission": submission,
                "status": PositionStatus.PENDING_VALIDATION,
                "validation": None,
                "registered_at": now,
                "eligible_since": None,
            }
            self.storage.positions[submission.id] = record
            try:
                result = self.validator.validate(
                    submission,
                    self.config.effective(now.date()).formula,
                    pool_price=self._current_pool_price(),
                )
            except Exception:
                del self.storage.positions[submission.id]
                raise

            record["validation"] = result
            if result.valid:
                record["status"] = PositionStatus.ELIGIBLE
                record["eligible_since"] = now
            else:
                record["status"] = PositionStatus.REJECTED

        log.info("position_registered", position_id=submission.id, owner=submission.owner,
                 status=record["status"].value, confidence=result.confidence.value, reason=result.reason)
        return RegistrationResult(
            position_id=submission.id,
            outcome=RegistrationOutcome.REGISTERED if result.valid else RegistrationOutcome.REJECTED,
            status=record["status"],
            validation=result,
            message=result.reason,
        )

    def bulk_register(self, submissions: Iterable[Union[PositionSubmission, dict]]) -> BulkRegistrationResult:
        items: list[RegistrationResult] = []
        for raw in submissions:
            raw_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
            position_id = None if raw_id is None else str(raw_id)
            try:
                submission = raw if isinstance(raw, PositionSubmission) else PositionSubmission.model_validate(raw)
                items.append(self.register_position(submission))
            except SchemaError as e:
                items.append(RegistrationResult(
                    position_id=position_id,
                    outcome=RegistrationOutcome.FAILED,
                    message="Invalid position submission",
                    error={"code": ValidationError.code, "errors": e.errors(include_url=False, include_context=False)},
                ))
            except RewardsError as e:
                log.warning("bulk_register_item_failed", position_id=position_id, error=e.message)
                items.append(RegistrationResult(position_id=position_id, outcome=RegistrationOutcome.FAILED,
                                                message=e.message, error=e.to_dict()))
            except Exception as e:
                log.exception("bulk_register_item_error", position_id=position_id)
                items.append(RegistrationResult(position_id=position_id, outcome=RegistrationOutcome.FAILED,
                                                message=str(e), error={"code": "INTERNAL_ERROR"}))

        counts = defaultdict(int)
        for item in items:
            counts[item.outcome] += 1
        return BulkRegistrationResult(
            items=items,
            registered=counts[RegistrationOutcome.REGISTERED],
            already_registered=counts[RegistrationOutcome.ALREADY_REGISTERED],
            rejected=counts[RegistrationOutcome.REJECTED],
            failed=counts[RegistrationOutcome.FAILED],
        )

    def get_position(self, position_id: str) -> Position:
        record = self.storage.positions.get(position_id)
        if record is None:
            raise NotFoundError(f"Position {position_id} not found")
        return Position(**record)

    def get_eligible_positions(self, owner: str) -> list[EligibilityView]:
        today = self._clock().date()
        version = self.config.effective(today)
        views = []
        for record in list(self.storage.positions.values()):
            position = Position(**record)
            if position.owner != owner:
                continue
            validation = position.validation
            days_active = self._days_active(position.id, today)
            views.append(EligibilityView(
                position_id=position.id,
                owner=owner,
                status=position.status,
                reason=validation.reason if validation else None,
                confidence=validation.confidence if validation else None,
                is_full_range=validation.is_full_range if validation else False,
                balance_ratio=validation.balance_ratio if validation else None,
                expected_ratio=validation.expected_ratio if validation else None,
                tolerance=validation.tolerance if validation else None,
                details=validation.details if validation else None,
                days_active=days_active,
                estimated_daily_reward=self._estimate(position, days_active, version),
                lock_period_days=version.formula.lock_period_days,
            ))
        return views

    def _estimate(self, position: Position, days_active: int, version: ConfigVersion) -> Optional[Decimal]:
        if position.status != PositionStatus.ELIGIBLE:
            return None
        try:
            pool = self.market_data.get_pool_snapshot()
            metrics = self.market_data.get_position_metrics(position.id)
            breakdown = self.engine.estimate(
                metrics.value_usd,
                pool.total_liquidity_usd,
                days_active,
                metrics.time_in_range_ratio,
                position.validation.is_full_range,
                version.formula,
                version.program,
            )
            return breakdown.amount
        except RewardsError as e:
            log.info("estimate_unavailable", position_id=position.id, error=e.message)
            return None

    def _current_pool_price(self) -> Optional[Decimal]:
        try:
            return self.market_data.get_pool_snapshot().current_price
        except DataUnavailableError:
            log.info("pool_price_unavailable_using_submitted")
            return None

    def _days_active(self, position_id: str, day: date) -> int:
        """Consecutive accrued days immediately before ``day``."""
        days = self.storage.participation.get(position_id, ())
        count = 0
        cursor = day - timedelta(days=1)
        while cursor in days:
            count += 1
            cursor -= timedelta(days=1)
        return count

    # ---------------------------------------------------- accounting periods

    def run_accounting_period(self, day: Optional[date] = None) -> PeriodRunReport:
        day = day or self._clock().date()
        version = self.config.effective(day)
        if not version.program.is_running(day):
            log.info("period_skipped_program_inactive", day=day.isoformat())
            return PeriodRunReport(day=day, skipped_reason="program not running on this day")

        with held(self.lease, f"{self.instance_id}:{uuid4().hex[:8]}") as lease_id:
            with self._plan_lock:
                plan = self.storage.period_plans.get(day)
                plan_created = plan is None
                if plan is None:
                    plan = self._build_plan(day, version)

            report = PeriodRunReport(day=day, plan_created=plan_created)
            for owner in sorted(plan.entitlements):
                report.items.append(self._grant_owner(day, owner, plan.entitlements[owner]))
                self.lease.renew(lease_id)

        report.granted_total = sum(
            (i.amount for i in report.items if i.status == OwnerGrantStatus.GRANTED), _ZERO
        )
        log.info(
            "period_run_finished",
            day=day.isoformat(),
            plan_created=plan_created,
            granted=report.count(OwnerGrantStatus.GRANTED),
            already_granted=report.count(OwnerGrantStatus.ALREADY_GRANTED),
            deferred=report.count(OwnerGrantStatus.DEFERRED),
            failed=report.count(OwnerGrantStatus.FAILED),
            granted_total=str(report.granted_total),
        )
        return report

    def _grant_owner(self, day: date, owner: str, amount: Decimal) -> OwnerGrantItem:
        if amount <= 0:
            return OwnerGrantItem(owner=owner, amount=amount, status=OwnerGrantStatus.ZERO)

        key = period_grant_key(day, owner)
        existing = self.ledger.find_grant(key)
        if existing is not None:
            return OwnerGrantItem(owner=owner, amount=existing.amount, status=OwnerGrantStatus.ALREADY_GRANTED,
                                  lot_id=existing.lot_id)
        try:
            result = self.ledger.grant(self.operator, owner, amount, grant_key=key)
        except CapacityError as e:
            log.warning("period_grant_deferred", day=day.isoformat(), owner=owner, amount=str(amount), error=e.message)
            return OwnerGrantItem(owner=owner, amount=amount, status=OwnerGrantStatus.DEFERRED, error=e.to_dict())
        except RewardsError as e:
            log.error("period_grant_failed", day=day.isoformat(), owner=owner, amount=str(amount), error=e.message)
            return OwnerGrantItem(owner=owner, amount=amount, status=OwnerGrantStatus.FAILED, error=e.to_dict())

        status = OwnerGrantStatus.GRANTED if result.created else OwnerGrantStatus.ALREADY_GRANTED
        return OwnerGrantItem(owner=owner, amount=result.lot.amount, status=status, lot_id=result.lot.lot_id)

    def _build_plan(self, day: date, version: ConfigVersion) -> PeriodPlan:
        pool = self.market_data.get_pool_snapshot()
        raw: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        accruals: list[PositionAccrual] = []
        skipped: dict[str, str] = {}
        accrued: dict[str, bool] = {}

        eligible = sorted(
            (Position(**r) for r in list(self.storage.positions.values())
             if r["status"] == PositionStatus.ELIGIBLE),
            key=lambda p: p.id,
        )
        for position in eligible:
            if not position.submission.is_in_range(pool.current_price):
                skipped[position.id] = "out of range"
                accrued[position.id] = False
                continue
            try:
                metrics = self.market_data.get_position_metrics(position.id)
            except DataUnavailableError as e:
                skipped[position.id] = e.message
                continue

            days_active = self._days_active(position.id, day)
            try:
                breakdown = self.engine.estimate(
                    metrics.value_usd,
                    pool.total_liquidity_usd,
                    days_active,
                    metrics.time_in_range_ratio,
                    position.validation.is_full_range,
                    version.formula,
                    version.program,
                )
            except ValidationError as e:
                skipped[position.id] = e.message
                continue

            accrued[position.id] = True
            raw[position.owner] += breakdown.amount
            accruals.append(PositionAccrual(position_id=position.id, owner=position.owner,
                                            days_active=days_active, breakdown=breakdown))

        naive_total = sum(raw.values(), _ZERO)
        plan = PeriodPlan(
            day=day,
            config_version=version.version,
            created_at=self._clock(),
            naive_total=naive_total,
            daily_budget=version.program.daily_budget,
            entitlements=self.engine.scale_to_budget(dict(raw), version.program.daily_budget),
            accruals=accruals,
            skipped=skipped,
        )

        self.storage.period_plans[day] = plan
        # each run records only its own day
        for position_id, in_range in accrued.items():
            days = self.storage.participation.setdefault(position_id, set())
            if in_range:
                days.add(day)
            else:
                days.discard(day)

        log.info("period_plan_created", day=day.isoformat(), positions=len(accruals), owners=len(raw),
                 skipped=len(skipped), naive_total=str(naive_total), scaled=plan.scaled)
        return plan
