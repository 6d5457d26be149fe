"""
Unit Tests for the Ledger Service

Tests cover:
1. Grant flow and time locks
2. Daily distribution cap
3. Idempotent grants (grant keys)
4. Claim batches
5. Token registry and switching the active token
6. Custody: funding, emergency withdrawal, pause
7. Roles and the audit trail
"""

import threading

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from core.clock import ManualClock
from core.errors import AuthorizationError, CapacityError, NotFoundError, StateConflictError, ValidationError
from ledger.models import ClaimItemStatus, CommandEnvelope, EventKind, LotState
from ledger.service import LedgerService
from program.models import FormulaParameters, ProgramConfig
from program.store import ConfigStore


# Test constants
OWNER = "admin"
OPERATOR = "operator"
ALICE = "0xalice"
BOB = "0xbob"
KILT = "0x5d0dd05bb095fdd6af4865a1adf97c39c85ad2d8"
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
START = datetime(2026, 7, 1, 9, 0, tzinfo=timezone.utc)

PROGRAM = ProgramConfig(
    total_allocation=Decimal("450000"),
    program_duration_days=90,
    program_start=date(2026, 7, 1),
    treasury_address="0xtreasury",
)
FORMULA = FormulaParameters(
    time_boost_coefficient=Decimal("0.6"),
    full_range_bonus=Decimal("1.2"),
    minimum_position_value_usd=Decimal("10"),
    lock_period_days=7,
)


def make_service(funding=Decimal("100000")):
    clock = ManualClock(START)
    config = ConfigStore(PROGRAM, FORMULA, admins=[OWNER], clock=clock)
    service = LedgerService(config, owner=OWNER, primary_token=KILT, primary_symbol="KILT",
                            operators=[OPERATOR], clock=clock)
    if funding:
        service.fund_treasury(OPERATOR, KILT, funding)
    return service, clock


class TestGrantFlow:
    """Tests for granting time-locked lots."""

    def test_grant_creates_locked_lot(self):
        """A grant creates a lot locked for the configured period."""
        service, _ = make_service()
        result = service.grant(OPERATOR, ALICE, Decimal("144"))

        assert result.created is True
        lot = result.lot
        assert lot.owner == ALICE
        assert lot.amount == Decimal("144")
        assert lot.token == KILT
        assert lot.token_symbol == "KILT"
        assert lot.unlock_at == START + timedelta(days=7)
        assert lot.state(START) == LotState.GRANTED
        assert service.get_claimable_lots(ALICE) == []

    def test_lot_unlocks_after_period(self):
        """The lot becomes claimable exactly at unlock_at."""
        service, clock = make_service()
        service.grant(OPERATOR, ALICE, Decimal("144"))

        clock.advance(days=7)
        assert len(service.get_claimable_lots(ALICE)) == 1

    def test_unlock_fixed_at_grant(self):
        """Changing the lock period later does not move existing lots."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("10")).lot
        service.config.set_formula_parameters(OWNER, FORMULA.model_copy(update={"lock_period_days": 30}), "longer")
        clock.advance(days=1)

        assert service.get_lot(lot.lot_id).unlock_at == START + timedelta(days=7)
        assert service.grant(OPERATOR, ALICE, Decimal("10")).lot.unlock_at == START + timedelta(days=31)

    def test_lot_ids_monotonic(self):
        """Lot ids increase with every grant."""
        service, _ = make_service()
        ids = [service.grant(OPERATOR, ALICE, Decimal("1")).lot.lot_id for _ in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_grant_requires_positive_amount(self):
        """Zero, negative and non-finite amounts are rejected."""
        service, _ = make_service()
        for amount in (Decimal("0"), Decimal("-5"), Decimal("NaN")):
            with pytest.raises(ValidationError):
                service.grant(OPERATOR, ALICE, amount)

    def test_inactive_program_blocks_grants(self):
        """Grants stop once the program is deactivated."""
        service, clock = make_service()
        service.config.set_program_config(OWNER, PROGRAM.model_copy(update={"active": False}), "wind down")
        clock.advance(days=1)
        with pytest.raises(StateConflictError):
            service.grant(OPERATOR, ALICE, Decimal("1"))


class TestDailyCap:
    """Tests for the daily distribution cap."""

    def test_cap_enforced(self):
        """A grant that would exceed the daily budget is refused and retryable."""
        service, _ = make_service()
        service.grant(OPERATOR, ALICE, Decimal("3000"))

        with pytest.raises(CapacityError) as exc:
            service.grant(OPERATOR, BOB, Decimal("2500"))
        assert exc.value.retryable is True

        status = service.get_distribution_status()
        assert status.distributed == Decimal("3000")
        assert status.cap == Decimal("5000")
        assert status.remaining == Decimal("2000")

    def test_cap_exactly_reached(self):
        """Granting up to the cap is allowed."""
        service, _ = make_service()
        service.grant(OPERATOR, ALICE, Decimal("3000"))
        service.grant(OPERATOR, BOB, Decimal("2000"))
        assert service.get_distribution_status().remaining == Decimal("0")

    def test_cap_resets_next_day(self):
        """Each day has its own counter."""
        service, clock = make_service()
        service.grant(OPERATOR, ALICE, Decimal("5000"))
        clock.advance(days=1)
        service.grant(OPERATOR, ALICE, Decimal("5000"))
        assert service.get_distribution_status(date(2026, 7, 1)).distributed == Decimal("5000")
        assert service.get_distribution_status(date(2026, 7, 2)).distributed == Decimal("5000")

    def test_insufficient_balance_not_retryable(self):
        """Grants never exceed what the treasury can cover."""
        service, _ = make_service(funding=Decimal("100"))
        with pytest.raises(CapacityError) as exc:
            service.grant(OPERATOR, ALICE, Decimal("200"))
        assert exc.value.retryable is False
        assert service.get_lots(ALICE) == []

    def test_concurrent_grants_respect_cap(self):
        """Racing grants never push the counter past the cap."""
        service, _ = make_service()
        created, refused = [], []

        def worker(i):
            try:
                created.append(service.grant(OPERATOR, f"0xuser{i}", Decimal("300")))
            except CapacityError:
                refused.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 16
        assert len(refused) == 9
        assert service.get_distribution_status().distributed == Decimal("4800")
        assert len({r.lot.lot_id for r in created}) == 16


class TestIdempotentGrants:
    """Tests for grant keys."""

    def test_same_key_returns_existing(self):
        """A repeated grant key returns the original lot and counts once."""
        service, _ = make_service()
        first = service.grant(OPERATOR, ALICE, Decimal("144"), grant_key="period:2026-07-01:0xalice")
        second = service.grant(OPERATOR, ALICE, Decimal("144"), grant_key="period:2026-07-01:0xalice")

        assert second.created is False
        assert second.lot.lot_id == first.lot.lot_id
        assert "idempotent" in second.message.lower()
        assert service.get_distribution_status().distributed == Decimal("144")
        assert len(service.get_lots(ALICE)) == 1

    def test_find_grant(self):
        """Grant keys can be looked up."""
        service, _ = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("1"), grant_key="k-1").lot
        assert service.find_grant("k-1").lot_id == lot.lot_id
        assert service.find_grant("k-2") is None


class TestClaims:
    """Tests for claiming lots."""

    def test_claim_before_unlock_rejected(self):
        """Locked lots cannot be claimed."""
        service, _ = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("144")).lot
        with pytest.raises(StateConflictError):
            service.claim(ALICE, ALICE, lot.lot_id)
        assert service.gateway.transfers == []

    def test_claim_after_unlock(self):
        """An unlocked lot is paid out once and leaves custody."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("144")).lot
        clock.advance(days=7)

        result = service.claim(ALICE, ALICE, lot.lot_id)
        assert result.claimed_lot_ids == [lot.lot_id]
        assert result.total_claimed == Decimal("144")
        assert service.gateway.transfers[0].to == ALICE

        balance = service.get_balance(KILT)
        assert balance.balance == Decimal("99856")
        assert balance.outstanding == Decimal("0")
        assert service.get_lot(lot.lot_id).state(clock()) == LotState.CLAIMED

    def test_claim_only_once(self):
        """A claimed lot reports ALREADY_CLAIMED and pays nothing."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("144")).lot
        clock.advance(days=7)
        service.claim(ALICE, ALICE, lot.lot_id)

        result = service.claim_batch(ALICE, ALICE, [lot.lot_id])
        assert result.items[0].status == ClaimItemStatus.ALREADY_CLAIMED
        assert result.transfers == []
        assert len(service.gateway.transfers) == 1

    def test_concurrent_claims_pay_once(self):
        """Racing claims on one unlocked lot produce exactly one payout."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("144")).lot
        clock.advance(days=7)
        statuses = []

        def worker():
            result = service.claim_batch(ALICE, ALICE, [lot.lot_id])
            statuses.append(result.items[0].status)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert statuses.count(ClaimItemStatus.CLAIMED) == 1
        assert statuses.count(ClaimItemStatus.ALREADY_CLAIMED) == 19
        assert len(service.gateway.transfers) == 1
        assert service.get_balance(KILT).balance == Decimal("99856")

    def test_batch_reports_each_item(self):
        """Ineligible lots are skipped and reported; the rest are paid."""
        service, clock = make_service()
        mine = service.grant(OPERATOR, ALICE, Decimal("100")).lot
        theirs = service.grant(OPERATOR, BOB, Decimal("50")).lot
        clock.advance(days=7)
        locked = service.grant(OPERATOR, ALICE, Decimal("25")).lot

        result = service.claim_batch(ALICE, ALICE, [mine.lot_id, theirs.lot_id, locked.lot_id, 999, mine.lot_id])
        statuses = [(i.lot_id, i.status) for i in result.items]
        assert statuses == [
            (mine.lot_id, ClaimItemStatus.CLAIMED),
            (theirs.lot_id, ClaimItemStatus.NOT_OWNER),
            (locked.lot_id, ClaimItemStatus.LOCKED),
            (999, ClaimItemStatus.NOT_FOUND),
            (mine.lot_id, ClaimItemStatus.DUPLICATE),
        ]
        assert result.total_claimed == Decimal("100")

    def test_claim_by_stranger_denied(self):
        """Only the lot owner or an operator may claim."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("100")).lot
        clock.advance(days=7)
        with pytest.raises(AuthorizationError):
            service.claim_batch(BOB, ALICE, [lot.lot_id])

    def test_missing_lot(self):
        """Claiming an unknown lot raises NotFoundError."""
        service, _ = make_service()
        with pytest.raises(NotFoundError):
            service.claim(ALICE, ALICE, 42)


class TestTokenRegistry:
    """Tests for supported tokens and the active reward token."""

    def test_switch_keeps_old_denomination(self):
        """Lots keep the token they were granted in; one transfer per token."""
        service, clock = make_service()
        kilt_lot = service.grant(OPERATOR, ALICE, Decimal("100")).lot

        service.add_supported_token(OWNER, USDC, "USDC")
        service.fund_treasury(OPERATOR, USDC, Decimal("1000"))
        service.set_active_token(OPERATOR, USDC, "USDC")
        usdc_lot = service.grant(OPERATOR, ALICE, Decimal("40")).lot

        assert service.get_lot(kilt_lot.lot_id).token == KILT
        assert usdc_lot.token == USDC
        assert service.get_active_token().address == USDC

        clock.advance(days=7)
        result = service.claim_batch(ALICE, ALICE, [kilt_lot.lot_id, usdc_lot.lot_id])
        assert sorted((t.token, t.amount) for t in result.transfers) == sorted(
            [(KILT, Decimal("100")), (USDC, Decimal("40"))]
        )

    def test_cannot_remove_primary_or_active(self):
        """The primary and the active token stay supported."""
        service, _ = make_service()
        service.add_supported_token(OWNER, USDC, "USDC")
        service.set_active_token(OPERATOR, USDC, "USDC")

        with pytest.raises(StateConflictError):
            service.remove_supported_token(OWNER, KILT)
        with pytest.raises(StateConflictError):
            service.remove_supported_token(OWNER, USDC)

    def test_remove_inactive_token(self):
        """A supported, inactive, non-primary token can be removed."""
        service, _ = make_service()
        service.add_supported_token(OWNER, USDC, "USDC")
        removed = service.remove_supported_token(OWNER, USDC)
        assert removed.supported is False
        assert [t.address for t in service.get_supported_tokens()] == [KILT]

    def test_activate_unsupported_token(self):
        """Only supported tokens can become active."""
        service, _ = make_service()
        with pytest.raises(ValidationError):
            service.set_active_token(OPERATOR, USDC, "USDC")

    def test_duplicate_token(self):
        """Adding a supported token twice is a conflict."""
        service, _ = make_service()
        with pytest.raises(StateConflictError):
            service.add_supported_token(OWNER, KILT.upper().replace("0X", "0x"), "KILT")


class TestCustody:
    """Tests for treasury custody."""

    def test_emergency_withdraw_bounded_by_outstanding(self):
        """Withdrawal cannot touch funds owed to unclaimed lots."""
        service, _ = make_service(funding=Decimal("1000"))
        service.grant(OPERATOR, ALICE, Decimal("400"))

        with pytest.raises(CapacityError):
            service.emergency_withdraw(OWNER, KILT, Decimal("700"), "0xsafe")

        receipt = service.emergency_withdraw(OWNER, KILT, Decimal("600"), "0xsafe")
        assert receipt.to == "0xsafe"
        balance = service.get_balance(KILT)
        assert balance.balance == Decimal("400")
        assert balance.available == Decimal("0")

    def test_emergency_withdraw_owner_only(self):
        """Operators cannot withdraw."""
        service, _ = make_service()
        with pytest.raises(AuthorizationError):
            service.emergency_withdraw(OPERATOR, KILT, Decimal("1"), "0xsafe")

    def test_pause_blocks_grants_and_claims(self):
        """A paused treasury refuses grants and claims until unpaused."""
        service, clock = make_service()
        lot = service.grant(OPERATOR, ALICE, Decimal("10")).lot
        clock.advance(days=7)
        service.pause(OWNER)

        with pytest.raises(StateConflictError):
            service.grant(OPERATOR, ALICE, Decimal("10"))
        with pytest.raises(StateConflictError):
            service.claim_batch(ALICE, ALICE, [lot.lot_id])

        service.unpause(OWNER)
        assert service.claim(ALICE, ALICE, lot.lot_id).total_claimed == Decimal("10")


class TestRolesAndAudit:
    """Tests for roles and the event trail."""

    def test_unauthorized_grant_audited(self):
        """A denied call raises and leaves an audit event."""
        service, _ = make_service()
        with pytest.raises(AuthorizationError):
            service.grant(ALICE, ALICE, Decimal("10"))

        denied = [e for e in service.get_events() if e.kind == EventKind.AUTHORIZATION_DENIED]
        assert len(denied) == 1
        assert denied[0].actor == ALICE
        assert denied[0].details["action"] == "grant"

    def test_operator_lifecycle(self):
        """The owner authorizes and revokes operators."""
        service, _ = make_service()
        service.authorize_operator(OWNER, "ops-2")
        service.grant("ops-2", ALICE, Decimal("1"))

        service.revoke_operator(OWNER, "ops-2")
        with pytest.raises(AuthorizationError):
            service.grant("ops-2", ALICE, Decimal("1"))

    def test_events_in_order(self):
        """Every mutation is appended with an increasing sequence."""
        service, _ = make_service()
        service.grant(OPERATOR, ALICE, Decimal("1"))
        events = service.get_events()
        assert [e.kind for e in events] == [EventKind.TREASURY_FUNDED, EventKind.REWARD_GRANTED]
        assert [e.sequence for e in events] == [0, 1]


class TestCommands:
    """Tests for typed commands."""

    def test_grant_command(self):
        """A tagged grant command is dispatched to the service."""
        service, _ = make_service()
        envelope = CommandEnvelope.model_validate(
            {"command": {"kind": "grant", "owner": ALICE, "amount": "12.5", "grant_key": "cmd-1"}}
        )
        response = service.execute(OPERATOR, envelope.command)
        assert response.kind == "grant"
        assert response.result["lot"]["amount"] == "12.5"
        assert service.find_grant("cmd-1") is not None

    def test_unknown_kind_rejected(self):
        """Unknown command kinds fail schema validation."""
        with pytest.raises(ValueError):
            CommandEnvelope.model_validate({"command": {"kind": "mint", "amount": "1"}})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
