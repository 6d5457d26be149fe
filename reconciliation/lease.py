"""
Single-writer lease for grant issuance.

Only the lease holder may issue grants for an accounting period. The
in-memory lease serializes workers inside one process; deployments that run
several reconciliation instances provide a lease backed by a shared
transactional store behind the same ``GrantLease`` interface.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional, Protocol
from uuid import uuid4

from core.clock import Clock, utcnow
from core.errors import StateConflictError
from core.logging import get_logger

log = get_logger(__name__)


class GrantLease(Protocol):
    def acquire(self, holder: str) -> str: ...
    def renew(self, lease_id: str) -> None: ...
    def release(self, lease_id: str) -> None: ...


class InMemoryLease:
    def __init__(self, name: str = "grants", ttl_seconds: int = 300, clock: Clock = utcnow):
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._holder: Optional[str] = None
        self._lease_id: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @property
    def holder(self) -> Optional[str]:
        with self._lock:
            if self._expires_at is not None and self._clock() >= self._expires_at:
                return None
            return self._holder

    def acquire(self, holder: str) -> str:
        now = self._clock()
        with self._lock:
            if self._lease_id is not None and self._expires_at > now and self._holder != holder:
                raise StateConflictError(
                    f"Lease {self.name} is held by {self._holder}",
                    details={"holder": self._holder, "expires_at": self._expires_at.isoformat()},
                )
            if self._lease_id is not None and self._expires_at <= now:
                log.warning("lease_expired_takeover", lease=self.name, previous=self._holder, holder=holder)
            self._holder = holder
            self._lease_id = uuid4().hex
            self._expires_at = now + self.ttl
            return self._lease_id

    def renew(self, lease_id: str) -> None:
        now = self._clock()
        with self._lock:
            if lease_id != self._lease_id or self._expires_at <= now:
                raise StateConflictError(f"Lease {self.name} lost", details={"lease_id": lease_id})
            self._expires_at = now + self.ttl

    def release(self, lease_id: str) -> None:
        with self._lock:
            if lease_id == self._lease_id:
                self._holder = None
                self._lease_id = None
                self._expires_at = None


@contextmanager
def held(lease: GrantLease, holder: str) -> Iterator[str]:
    lease_id = lease.acquire(holder)
    try:
        yield lease_id
    finally:
        lease.release(lease_id)
