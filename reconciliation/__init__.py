"""
Reconciliation Service

This module provides:
- Idempotent position registration (single and bulk)
- Re-runnable accounting periods with persisted per-day plans
- Per-owner, per-period grant markers recorded by the ledger
- A single-writer lease around grant issuance
"""

from .lease import GrantLease, InMemoryLease, held
from .models import (
    RegistrationOutcome,
    OwnerGrantStatus,
    RegistrationResult,
    BulkRegisterRequest,
    BulkRegistrationResult,
    PeriodPlan,
    PeriodRunReport,
    EligibilityView,
)
from .service import ReconciliationService, InMemoryStorage, period_grant_key

__all__ = [
    "GrantLease",
    "InMemoryLease",
    "held",
    "RegistrationOutcome",
    "OwnerGrantStatus",
    "RegistrationResult",
    "BulkRegisterRequest",
    "BulkRegistrationResult",
    "PeriodPlan",
    "PeriodRunReport",
    "EligibilityView",
    "ReconciliationService",
    "InMemoryStorage",
    "period_grant_key",
]
