import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Iterator, Optional, Protocol
from uuid import uuid4

from core.clock import Clock, utcnow
from core.errors import (
    AuthorizationError,
    CapacityError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from core.logging import get_logger
from program.store import ConfigStore

from .models import (
    AddSupportedTokenCommand,
    AuthorizeOperatorCommand,
    ClaimBatchCommand,
    ClaimBatchResult,
    ClaimItemResult,
    ClaimItemStatus,
    CommandResponse,
    DistributionStatus,
    EmergencyWithdrawCommand,
    EventKind,
    FundTreasuryCommand,
    GrantCommand,
    GrantResult,
    PauseCommand,
    RemoveSupportedTokenCommand,
    RevokeOperatorCommand,
    RewardLot,
    SetActiveTokenCommand,
    TokenRecord,
    TransferReceipt,
    TreasuryBalance,
    TreasuryEvent,
    UnpauseCommand,
)

log = get_logger(__name__)

_ZERO = Decimal("0")


class TransferGateway(Protocol):
    """At-most-once fund transfer out of custody."""

    def transfer(self, token: str, to: str, amount: Decimal, reference: str) -> TransferReceipt: ...


class InMemoryTransferGateway:
    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self.transfers: list[TransferReceipt] = []

    def transfer(self, token: str, to: str, amount: Decimal, reference: str) -> TransferReceipt:
        receipt = TransferReceipt(
            transfer_id=uuid4().hex,
            token=token,
            to=to,
            amount=amount,
            reference=reference,
            at=self._clock(),
        )
        self.transfers.append(receipt)
        return receipt


class KeyedLocks:
    """One lock per key, acquired in sorted key order to rule out deadlocks."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._get(key))
            yield


class InMemoryStorage:
    def __init__(self):
        self.tokens: dict[str, dict] = {}
        self.primary_token: Optional[str] = None
        self.active_token: Optional[str] = None
        self.balances: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        self.outstanding: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        self.lots: dict[int, dict] = {}
        self.lots_by_owner: dict[str, list[int]] = defaultdict(list)
        self.next_lot_id: int = 0
        self.daily_distributed: dict[date, Decimal] = defaultdict(lambda: _ZERO)
        self.grant_index: dict[str, int] = {}
        self.events: list[dict] = []
        self.operators: set[str] = set()
        self.paused: bool = False


def _norm(token: str) -> str:
    return token.strip().lower()


class LedgerService:
    """
    Treasury custodian and append-only reward ledger.

    Grants create time-locked lots in the active token; claims release
    unlocked lots with one transfer per denomination. Grants are serialized
    per (day, token) and claims per lot and token, so the daily counter and
    each lot's claimed flag never see lost updates.
    """

    def __init__(
        self,
        config: ConfigStore,
        owner: str,
        primary_token: str,
        primary_symbol: str,
        operators: Iterable[str] = (),
        gateway: Optional[TransferGateway] = None,
        storage: Optional[InMemoryStorage] = None,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.owner = owner
        self._clock = clock
        self.gateway = gateway or InMemoryTransferGateway(clock)
        self.storage = storage or InMemoryStorage()
        self._locks = KeyedLocks()
        self._event_lock = threading.Lock()
        self._id_lock = threading.Lock()

        if self.storage.primary_token is None:
            token = _norm(primary_token)
            self.storage.tokens[token] = {"address": token, "symbol": primary_symbol, "supported": True}
            self.storage.primary_token = token
            self.storage.active_token = token
            self.storage.operators.update(operators)

    # ------------------------------------------------------------------ roles

    def is_operator(self, actor: str) -> bool:
        return actor == self.owner or actor in self.storage.operators

    def _require_owner(self, actor: str, action: str) -> None:
        if actor != self.owner:
            self._deny(actor, action, "owner")

    def _require_operator(self, actor: str, action: str) -> None:
        if not self.is_operator(actor):
            self._deny(actor, action, "operator")

    def _deny(self, actor: str, action: str, role: str) -> None:
        self._record(EventKind.AUTHORIZATION_DENIED, actor, action=action, required_role=role)
        log.warning("authorization_denied", actor=actor, action=action, required_role=role)
        raise AuthorizationError(f"{action} requires the {role} role", actor=actor, required_role=role)

    def authorize_operator(self, actor: str, operator: str) -> None:
        self._require_owner(actor, "authorize_operator")
        with self._locks.hold("registry"):
            self.storage.operators.add(operator)
        self._record(EventKind.OPERATOR_AUTHORIZED, actor, operator=operator)

    def revoke_operator(self, actor: str, operator: str) -> None:
        self._require_owner(actor, "revoke_operator")
        with self._locks.hold("registry"):
            self.storage.operators.discard(operator)
        self._record(EventKind.OPERATOR_REVOKED, actor, operator=operator)

    # ------------------------------------------------------------- breaker

    @property
    def is_paused(self) -> bool:
        return self.storage.paused

    def pause(self, actor: str) -> None:
        self._require_owner(actor, "pause")
        with self._locks.hold("registry"):
            self.storage.paused = True
        self._record(EventKind.PAUSED, actor)

    def unpause(self, actor: str) -> None:
        self._require_owner(actor, "unpause")
        with self._locks.hold("registry"):
            self.storage.paused = False
        self._record(EventKind.UNPAUSED, actor)

    def _ensure_running(self, action: str) -> None:
        if self.storage.paused:
            raise StateConflictError(f"Treasury is paused; {action} is disabled")

    # -------------------------------------------------------- token registry

    def add_supported_token(self, actor: str, token: str, symbol: str) -> TokenRecord:
        self._require_owner(actor, "add_supported_token")
        token = _norm(token)
        with self._locks.hold("registry"):
            existing = self.storage.tokens.get(token)
            if existing and existing["supported"]:
                raise StateConflictError(f"Token {token} already supported")
            self.storage.tokens[token] = {"address": token, "symbol": symbol, "supported": True}
        self._record(EventKind.TOKEN_ADDED, actor, token=token, symbol=symbol)
        return self.get_token(token)

    def remove_supported_token(self, actor: str, token: str) -> TokenRecord:
        self._require_owner(actor, "remove_supported_token")
        token = _norm(token)
        with self._locks.hold("registry"):
            record = self._supported(token)
            if token == self.storage.primary_token:
                raise StateConflictError("Cannot remove primary token")
            if token == self.storage.active_token:
                raise StateConflictError("Cannot remove the active reward token")
            record["supported"] = False
        self._record(EventKind.TOKEN_REMOVED, actor, token=token)
        return self.get_token(token)

    def set_active_token(self, actor: str, token: str, symbol: str) -> TokenRecord:
        self._require_operator(actor, "set_active_token")
        token = _norm(token)
        with self._locks.hold("registry"):
            record = self._supported(token)
            previous = self.storage.active_token
            record["symbol"] = symbol
            self.storage.active_token = token
        self._record(EventKind.ACTIVE_TOKEN_CHANGED, actor, previous=previous, token=token, symbol=symbol)
        return self.get_token(token)

    def _supported(self, token: str) -> dict:
        record = self.storage.tokens.get(token)
        if not record or not record["supported"]:
            raise ValidationError(f"Token {token} not supported", details={"token": token})
        return record

    def get_token(self, token: str) -> TokenRecord:
        token = _norm(token)
        record = self.storage.tokens.get(token)
        if not record:
            raise NotFoundError(f"Token {token} not found")
        return TokenRecord(
            address=token,
            symbol=record["symbol"],
            supported=record["supported"],
            is_active=token == self.storage.active_token,
            is_primary=token == self.storage.primary_token,
        )

    def get_supported_tokens(self) -> list[TokenRecord]:
        return [self.get_token(t) for t, r in self.storage.tokens.items() if r["supported"]]

    def get_active_token(self) -> TokenRecord:
        return self.get_token(self.storage.active_token)

    # --------------------------------------------------------------- custody

    def fund_treasury(self, actor: str, token: str, amount: Decimal) -> TreasuryBalance:
        self._require_operator(actor, "fund_treasury")
        token = _norm(token)
        self._check_amount(amount)
        self._supported(token)
        with self._locks.hold(f"token:{token}"):
            self.storage.balances[token] += amount
        self._record(EventKind.TREASURY_FUNDED, actor, token=token, amount=str(amount))
        return self.get_balance(token)

    def emergency_withdraw(self, actor: str, token: str, amount: Decimal, destination: str) -> TransferReceipt:
        """Withdraw undistributed funds. Bounded by balance minus the unclaimed
        lots in that token, so granted lots stay fully funded."""
        self._require_owner(actor, "emergency_withdraw")
        token = _norm(token)
        self._check_amount(amount)
        with self._locks.hold(f"token:{token}"):
            balance = self.storage.balances[token]
            available = balance - self.storage.outstanding[token]
            if amount > available:
                raise CapacityError(
                    "Withdrawal would leave granted lots unfunded",
                    retryable=False,
                    details={"token": token, "requested": str(amount), "available": str(available),
                             "balance": str(balance)},
                )
            receipt = self.gateway.transfer(token, destination, amount, reference=f"emergency:{uuid4().hex[:12]}")
            self.storage.balances[token] = balance - amount
        self._record(EventKind.EMERGENCY_WITHDRAWAL, actor, token=token, amount=str(amount),
                     destination=destination, transfer_id=receipt.transfer_id)
        log.warning("emergency_withdrawal", actor=actor, token=token, amount=str(amount), destination=destination)
        return receipt

    def get_balance(self, token: str) -> TreasuryBalance:
        token = _norm(token)
        record = self.storage.tokens.get(token)
        if not record:
            raise NotFoundError(f"Token {token} not found")
        balance = self.storage.balances[token]
        outstanding = self.storage.outstanding[token]
        return TreasuryBalance(
            token=token,
            symbol=record["symbol"],
            balance=balance,
            outstanding=outstanding,
            available=balance - outstanding,
        )

    def get_balances(self) -> list[TreasuryBalance]:
        return [self.get_balance(t) for t in self.storage.tokens]

    # ----------------------------------------------------------------- grant

    def grant(self, actor: str, owner: str, amount: Decimal, grant_key: Optional[str] = None) -> GrantResult:
        self._require_operator(actor, "grant")
        self._check_amount(amount)
        self._ensure_running("grant")

        now = self._clock()
        today = now.date()
        version = self.config.effective(today)
        if not version.program.active:
            raise StateConflictError("Rewards program is not active")
        cap = version.program.daily_budget
        lock_days = version.formula.lock_period_days

        with self._locks.hold("registry"):
            token = self.storage.active_token
            symbol = self.storage.tokens[token]["symbol"]

        keys = [f"day:{today.isoformat()}", f"token:{token}"]
        if grant_key:
            keys.append(f"grant:{grant_key}")

        with self._locks.hold(*keys):
            self._ensure_running("grant")
            if grant_key and grant_key in self.storage.grant_index:
                lot = self._lot(self.storage.grant_index[grant_key])
                return GrantResult(
                    lot=lot,
                    created=False,
                    distribution=self.get_distribution_status(lot.granted_at.date()),
                    message="Grant already recorded (idempotent return)",
                )

            distributed = self.storage.daily_distributed[today]
            if distributed + amount > cap:
                log.warning("grant_deferred_cap", owner=owner, amount=str(amount),
                            distributed=str(distributed), cap=str(cap))
                raise CapacityError(
                    "Daily distribution cap exceeded",
                    details={"day": today.isoformat(), "distributed": str(distributed),
                             "cap": str(cap), "requested": str(amount)},
                )

            available = self.storage.balances[token] - self.storage.outstanding[token]
            if amount > available:
                log.error("grant_rejected_balance", owner=owner, amount=str(amount),
                          token=token, available=str(available))
                raise CapacityError(
                    "Insufficient treasury balance",
                    retryable=False,
                    details={"token": token, "available": str(available), "requested": str(amount)},
                )

            with self._id_lock:
                lot_id = self.storage.next_lot_id
                self.storage.next_lot_id += 1

            # lot, counter and idempotency key land together; nothing below raises
            self.storage.lots[lot_id] = {
                "lot_id": lot_id,
                "owner": owner,
                "amount": amount,
                "token": token,
                "token_symbol": symbol,
                "granted_at": now,
                "unlock_at": now + timedelta(days=lock_days),
                "claimed": False,
                "claimed_at": None,
                "grant_key": grant_key,
            }
            self.storage.lots_by_owner[owner].append(lot_id)
            self.storage.daily_distributed[today] = distributed + amount
            self.storage.outstanding[token] += amount
            if grant_key:
                self.storage.grant_index[grant_key] = lot_id

        lot = self._lot(lot_id)
        self._record(EventKind.REWARD_GRANTED, actor, lot_id=lot_id, owner=owner, amount=str(amount),
                     token=token, unlock_at=lot.unlock_at.isoformat(), grant_key=grant_key)
        return GrantResult(
            lot=lot,
            created=True,
            distribution=self.get_distribution_status(today),
            message="Reward granted",
        )

    # ----------------------------------------------------------------- claim

    def claim_batch(self, actor: str, owner: str, lot_ids: list[int]) -> ClaimBatchResult:
        """Claim a batch of lots.

        Lots that are missing, owned by someone else, still locked or already
        claimed are skipped and reported per item; the rest are paid out with
        one transfer per token.
        """
        if actor != owner and not self.is_operator(actor):
            self._deny(actor, "claim_batch", "lot owner")
        self._ensure_running("claim")

        items: dict[int, ClaimItemResult] = {}
        ordered: list[int] = []
        duplicates: list[ClaimItemResult] = []
        for lot_id in lot_ids:
            if lot_id in ordered:
                duplicates.append(ClaimItemResult(lot_id=lot_id, status=ClaimItemStatus.DUPLICATE))
                continue
            ordered.append(lot_id)

        tokens = {self.storage.lots[i]["token"] for i in ordered if i in self.storage.lots}
        keys = [f"lot:{i}" for i in ordered] + [f"token:{t}" for t in tokens]

        payable: dict[str, list[dict]] = defaultdict(list)
        transfers: list[TransferReceipt] = []
        claimed_ids: list[int] = []

        with self._locks.hold(*keys):
            self._ensure_running("claim")
            now = self._clock()
            for lot_id in ordered:
                record = self.storage.lots.get(lot_id)
                if record is None:
                    items[lot_id] = ClaimItemResult(lot_id=lot_id, status=ClaimItemStatus.NOT_FOUND)
                    continue
                status = None
                if record["owner"] != owner:
                    status = ClaimItemStatus.NOT_OWNER
                elif record["claimed"]:
                    status = ClaimItemStatus.ALREADY_CLAIMED
                elif now < record["unlock_at"]:
                    status = ClaimItemStatus.LOCKED
                if status is not None:
                    items[lot_id] = ClaimItemResult(lot_id=lot_id, status=status, amount=record["amount"],
                                                    token=record["token"], unlock_at=record["unlock_at"])
                    continue
                payable[record["token"]].append(record)

            for token, records in payable.items():
                total = sum((r["amount"] for r in records), _ZERO)
                status = ClaimItemStatus.CLAIMED
                if self.storage.balances[token] < total:
                    log.error("claim_unfunded", owner=owner, token=token, total=str(total),
                              balance=str(self.storage.balances[token]))
                    status = ClaimItemStatus.UNFUNDED
                else:
                    reference = "claim:" + ",".join(str(r["lot_id"]) for r in records)
                    try:
                        receipt = self.gateway.transfer(token, owner, total, reference)
                    except Exception:
                        log.exception("claim_transfer_failed", owner=owner, token=token, total=str(total))
                        status = ClaimItemStatus.TRANSFER_FAILED
                    else:
                        transfers.append(receipt)
                        for r in records:
                            self._mark_claimed(r, now)
                            claimed_ids.append(r["lot_id"])
                        self.storage.balances[token] -= total
                        self.storage.outstanding[token] -= total
                for r in records:
                    items[r["lot_id"]] = ClaimItemResult(lot_id=r["lot_id"], status=status, amount=r["amount"],
                                                         token=token, unlock_at=r["unlock_at"])

        for receipt in transfers:
            self._record(EventKind.REWARD_CLAIMED, actor, owner=owner, token=receipt.token,
                         amount=str(receipt.amount), reference=receipt.reference,
                         transfer_id=receipt.transfer_id)

        return ClaimBatchResult(
            owner=owner,
            items=[items[i] for i in ordered] + duplicates,
            transfers=transfers,
            claimed_lot_ids=claimed_ids,
        )

    def claim(self, actor: str, owner: str, lot_id: int) -> ClaimBatchResult:
        result = self.claim_batch(actor, owner, [lot_id])
        item = result.items[0]
        if item.status == ClaimItemStatus.NOT_FOUND:
            raise NotFoundError(f"Lot {lot_id} not found")
        if item.status != ClaimItemStatus.CLAIMED:
            raise StateConflictError(f"Lot {lot_id} is not claimable: {item.status.value}",
                                     details={"lot_id": lot_id, "status": item.status.value})
        return result

    @staticmethod
    def _mark_claimed(record: dict, now: datetime) -> None:
        if record["claimed"]:
            raise StateConflictError(f"Lot {record['lot_id']} already claimed")
        record["claimed"] = True
        record["claimed_at"] = now

    # --------------------------------------------------------------- queries

    def _lot(self, lot_id: int) -> RewardLot:
        record = self.storage.lots.get(lot_id)
        if record is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return RewardLot(**record)

    def get_lot(self, lot_id: int) -> RewardLot:
        return self._lot(lot_id)

    def get_lots(self, owner: str) -> list[RewardLot]:
        return [self._lot(i) for i in self.storage.lots_by_owner.get(owner, [])]

    def get_claimable_lots(self, owner: str) -> list[RewardLot]:
        now = self._clock()
        return [lot for lot in self.get_lots(owner) if lot.is_claimable(now)]

    def find_grant(self, grant_key: str) -> Optional[RewardLot]:
        lot_id = self.storage.grant_index.get(grant_key)
        return self._lot(lot_id) if lot_id is not None else None

    def get_distribution_status(self, day: Optional[date] = None) -> DistributionStatus:
        day = day or self._clock().date()
        cap = self.config.effective(day).program.daily_budget
        distributed = self.storage.daily_distributed.get(day, _ZERO)
        return DistributionStatus(day=day, distributed=distributed, cap=cap, remaining=max(cap - distributed, _ZERO))

    def get_events(self, limit: int = 100, offset: int = 0) -> list[TreasuryEvent]:
        with self._event_lock:
            window = self.storage.events[offset:offset + limit]
        return [TreasuryEvent(**e) for e in window]

    # -------------------------------------------------------------- commands

    def execute(self, actor: str, command) -> CommandResponse:
        if isinstance(command, GrantCommand):
            result = self.grant(actor, command.owner, command.amount, command.grant_key)
            return CommandResponse(kind=command.kind, message=result.message, result=result.model_dump(mode="json"))
        if isinstance(command, ClaimBatchCommand):
            result = self.claim_batch(actor, command.owner, command.lot_ids)
            return CommandResponse(kind=command.kind, message=f"{len(result.claimed_lot_ids)} lot(s) claimed",
                                   result=result.model_dump(mode="json"))
        if isinstance(command, SetActiveTokenCommand):
            token = self.set_active_token(actor, command.token, command.symbol)
            return CommandResponse(kind=command.kind, message="Active token changed", result=token.model_dump())
        if isinstance(command, AddSupportedTokenCommand):
            token = self.add_supported_token(actor, command.token, command.symbol)
            return CommandResponse(kind=command.kind, message="Token added", result=token.model_dump())
        if isinstance(command, RemoveSupportedTokenCommand):
            token = self.remove_supported_token(actor, command.token)
            return CommandResponse(kind=command.kind, message="Token removed", result=token.model_dump())
        if isinstance(command, FundTreasuryCommand):
            balance = self.fund_treasury(actor, command.token, command.amount)
            return CommandResponse(kind=command.kind, message="Treasury funded", result=balance.model_dump(mode="json"))
        if isinstance(command, EmergencyWithdrawCommand):
            receipt = self.emergency_withdraw(actor, command.token, command.amount, command.destination)
            return CommandResponse(kind=command.kind, message="Emergency withdrawal executed",
                                   result=receipt.model_dump(mode="json"))
        if isinstance(command, PauseCommand):
            self.pause(actor)
            return CommandResponse(kind=command.kind, message="Treasury paused")
        if isinstance(command, UnpauseCommand):
            self.unpause(actor)
            return CommandResponse(kind=command.kind, message="Treasury unpaused")
        if isinstance(command, AuthorizeOperatorCommand):
            self.authorize_operator(actor, command.operator)
            return CommandResponse(kind=command.kind, message=f"Operator {command.operator} authorized")
        if isinstance(command, RevokeOperatorCommand):
            self.revoke_operator(actor, command.operator)
            return CommandResponse(kind=command.kind, message=f"Operator {command.operator} revoked")
        raise ValidationError(f"Unknown command {type(command).__name__}")

    # ------------------------------------------------------------- internals

    @staticmethod
    def _check_amount(amount: Decimal) -> None:
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive, finite decimal", details={"amount": str(amount)})

    def _record(self, kind: EventKind, actor: str, **details) -> None:
        with self._event_lock:
            event = {
                "sequence": len(self.storage.events),
                "kind": kind,
                "actor": actor,
                "at": self._clock(),
                "details": details,
            }
            self.storage.events.append(event)
        log.info("treasury_event", kind=kind.value, actor=actor, **details)
