from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, ConfigDict


class LotState(str, Enum):
    GRANTED = "GRANTED"
    UNLOCKABLE = "UNLOCKABLE"
    CLAIMED = "CLAIMED"


class EventKind(str, Enum):
    TOKEN_ADDED = "TOKEN_ADDED"
    TOKEN_REMOVED = "TOKEN_REMOVED"
    ACTIVE_TOKEN_CHANGED = "ACTIVE_TOKEN_CHANGED"
    TREASURY_FUNDED = "TREASURY_FUNDED"
    REWARD_GRANTED = "REWARD_GRANTED"
    REWARD_CLAIMED = "REWARD_CLAIMED"
    EMERGENCY_WITHDRAWAL = "EMERGENCY_WITHDRAWAL"
    PAUSED = "PAUSED"
    UNPAUSED = "UNPAUSED"
    OPERATOR_AUTHORIZED = "OPERATOR_AUTHORIZED"
    OPERATOR_REVOKED = "OPERATOR_REVOKED"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"


class ClaimItemStatus(str, Enum):
    CLAIMED = "CLAIMED"
    NOT_FOUND = "NOT_FOUND"
    NOT_OWNER = "NOT_OWNER"
    LOCKED = "LOCKED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    DUPLICATE = "DUPLICATE"
    UNFUNDED = "UNFUNDED"
    TRANSFER_FAILED = "TRANSFER_FAILED"


class RewardLot(BaseModel):
    lot_id: int
    owner: str
    amount: Decimal
    token: str
    token_symbol: str
    granted_at: datetime
    unlock_at: datetime
    claimed: bool = False
    claimed_at: Optional[datetime] = None
    grant_key: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    def state(self, now: datetime) -> LotState:
        if self.claimed:
            return LotState.CLAIMED
        if now >= self.unlock_at:
            return LotState.UNLOCKABLE
        return LotState.GRANTED

    def is_claimable(self, now: datetime) -> bool:
        return self.state(now) == LotState.UNLOCKABLE


class TokenRecord(BaseModel):
    address: str
    symbol: str
    supported: bool
    is_active: bool
    is_primary: bool


class TreasuryBalance(BaseModel):
    token: str
    symbol: str
    balance: Decimal
    outstanding: Decimal
    available: Decimal


class DistributionStatus(BaseModel):
    day: date
    distributed: Decimal
    cap: Decimal
    remaining: Decimal


class TreasuryEvent(BaseModel):
    sequence: int
    kind: EventKind
    actor: str
    at: datetime
    details: dict = Field(default_factory=dict)


class TransferReceipt(BaseModel):
    transfer_id: str
    token: str
    to: str
    amount: Decimal
    reference: str
    at: datetime


class GrantResult(BaseModel):
    lot: RewardLot
    created: bool
    distribution: DistributionStatus
    message: str


class ClaimItemResult(BaseModel):
    lot_id: int
    status: ClaimItemStatus
    amount: Optional[Decimal] = None
    token: Optional[str] = None
    unlock_at: Optional[datetime] = None


class ClaimBatchResult(BaseModel):
    owner: str
    items: list[ClaimItemResult]
    transfers: list[TransferReceipt]
    claimed_lot_ids: list[int]

    @property
    def total_claimed(self) -> Decimal:
        return sum((t.amount for t in self.transfers), Decimal("0"))


# Commands. Every mutation of the custodian is expressed as one of these
# tagged variants and validated before it reaches the service.

PositiveAmount = Annotated[Decimal, Field(gt=0, allow_inf_nan=False)]


class GrantCommand(BaseModel):
    kind: Literal["grant"] = "grant"
    owner: str = Field(..., min_length=1)
    amount: PositiveAmount
    grant_key: Optional[str] = None


class ClaimBatchCommand(BaseModel):
    kind: Literal["claim_batch"] = "claim_batch"
    owner: str = Field(..., min_length=1)
    lot_ids: list[int] = Field(..., min_length=1)


class SetActiveTokenCommand(BaseModel):
    kind: Literal["set_active_token"] = "set_active_token"
    token: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)


class AddSupportedTokenCommand(BaseModel):
    kind: Literal["add_supported_token"] = "add_supported_token"
    token: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)


class RemoveSupportedTokenCommand(BaseModel):
    kind: Literal["remove_supported_token"] = "remove_supported_token"
    token: str = Field(..., min_length=1)


class FundTreasuryCommand(BaseModel):
    kind: Literal["fund_treasury"] = "fund_treasury"
    token: str = Field(..., min_length=1)
    amount: PositiveAmount


class EmergencyWithdrawCommand(BaseModel):
    kind: Literal["emergency_withdraw"] = "emergency_withdraw"
    token: str = Field(..., min_length=1)
    amount: PositiveAmount
    destination: str = Field(..., min_length=1)


class PauseCommand(BaseModel):
    kind: Literal["pause"] = "pause"


class UnpauseCommand(BaseModel):
    kind: Literal["unpause"] = "unpause"


class AuthorizeOperatorCommand(BaseModel):
    kind: Literal["authorize_operator"] = "authorize_operator"
    operator: str = Field(..., min_length=1)


class RevokeOperatorCommand(BaseModel):
    kind: Literal["revoke_operator"] = "revoke_operator"
    operator: str = Field(..., min_length=1)


LedgerCommand = Annotated[
    Union[
        GrantCommand,
        ClaimBatchCommand,
        SetActiveTokenCommand,
        AddSupportedTokenCommand,
        RemoveSupportedTokenCommand,
        FundTreasuryCommand,
        EmergencyWithdrawCommand,
        PauseCommand,
        UnpauseCommand,
        AuthorizeOperatorCommand,
        RevokeOperatorCommand,
    ],
    Field(discriminator="kind"),
]


class CommandEnvelope(BaseModel):
    command: LedgerCommand


class CommandResponse(BaseModel):
    kind: str
    message: str
    result: Optional[dict] = None
