"""
Error taxonomy shared by the validator, formula engine, ledger and
reconciliation service. Every error carries a stable ``code`` and a
``details`` mapping so it can be surfaced over HTTP and in logs unchanged.
"""

import json
from typing import Any, Mapping, Optional


class RewardsError(Exception):
    code: str = "REWARDS_ERROR"

    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None) -> None:
        self.message = message or self.__class__.__name__
        self.details = dict(details or {})
        super().__init__(str(self))

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        if self.details:
            packed = json.dumps(self.details, sort_keys=True, separators=(",", ":"), default=str)
            return f"{self.code}: {self.message} [{packed}]"
        return f"{self.code}: {self.message}"


class ValidationError(RewardsError):
    """Input or position rejected. Reported, never retried."""
    code = "VALIDATION_ERROR"


class CapacityError(RewardsError):
    """Daily cap or treasury balance exceeded."""
    code = "CAPACITY_ERROR"

    def __init__(
        self,
        message: str = "capacity exceeded",
        *,
        retryable: bool = True,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.retryable = retryable
        d = dict(details or {})
        d.setdefault("retryable", retryable)
        super().__init__(message, details=d)


class AuthorizationError(RewardsError):
    code = "AUTHORIZATION_ERROR"

    def __init__(
        self,
        message: str = "caller is not authorized",
        *,
        actor: Optional[str] = None,
        required_role: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        d = dict(details or {})
        if actor is not None:
            d.setdefault("actor", actor)
        if required_role is not None:
            d.setdefault("required_role", required_role)
        super().__init__(message, details=d)


class StateConflictError(RewardsError):
    """Double claim, already registered, paused, lease held elsewhere."""
    code = "STATE_CONFLICT"


class DataUnavailableError(RewardsError):
    """An external data source could not supply the requested value."""
    code = "DATA_UNAVAILABLE"


class NotFoundError(RewardsError):
    code = "NOT_FOUND"


__all__ = [
    "RewardsError",
    "ValidationError",
    "CapacityError",
    "AuthorizationError",
    "StateConflictError",
    "DataUnavailableError",
    "NotFoundError",
]
