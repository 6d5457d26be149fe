"""
Shared plumbing for the LP rewards services: error taxonomy, structured
logging, environment settings and clocks.
"""

from .clock import Clock, ManualClock, utcnow
from .errors import (
    RewardsError,
    ValidationError,
    CapacityError,
    AuthorizationError,
    StateConflictError,
    DataUnavailableError,
    NotFoundError,
)

__all__ = [
    "Clock",
    "ManualClock",
    "utcnow",
    "RewardsError",
    "ValidationError",
    "CapacityError",
    "AuthorizationError",
    "StateConflictError",
    "DataUnavailableError",
    "NotFoundError",
]
