"""
Reward Ledger and Treasury Custodian

This module provides:
- Immutable, time-locked reward lots
- Daily distribution caps enforced atomically with every grant
- A token registry with exactly one active reward token
- Claim batches with per-lot reporting and one transfer per token
- Emergency withdrawal bounded by outstanding obligations
- An append-only audit trail of every mutation and denied call
"""

from .models import (
    LotState,
    EventKind,
    ClaimItemStatus,
    RewardLot,
    TokenRecord,
    TreasuryBalance,
    DistributionStatus,
    TreasuryEvent,
    GrantResult,
    ClaimBatchResult,
    LedgerCommand,
)
from .service import LedgerService, InMemoryStorage, InMemoryTransferGateway

__all__ = [
    "LotState",
    "EventKind",
    "ClaimItemStatus",
    "RewardLot",
    "TokenRecord",
    "TreasuryBalance",
    "DistributionStatus",
    "TreasuryEvent",
    "GrantResult",
    "ClaimBatchResult",
    "LedgerCommand",
    "LedgerService",
    "InMemoryStorage",
    "InMemoryTransferGateway",
]
