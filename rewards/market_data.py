"""
Market-data collaborator.

The rewards engine treats market data as a read-only, eventually consistent
input: the current pool snapshot (price, 24h volume, total liquidity in
USD), live per-position metrics, and historical prices used by the
validator. Providers plug in through the two protocols below;
``InMemoryMarketData`` is the push-fed implementation used by the default
deployment and by tests.

Historical lookups may block on external I/O, so callers wrap them in
``fetch_with_backoff``: exponential backoff with jitter, bounded attempts,
retrying only ``DataUnavailableError``.
"""

import bisect
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol, TypeVar

from core.errors import DataUnavailableError, ValidationError
from core.logging import get_logger

from .models import PoolSnapshot, PositionMetrics

log = get_logger(__name__)


def _require_aware(at: datetime) -> None:
    if at.tzinfo is None or at.utcoffset() is None:
        raise ValidationError("Price timestamps must be timezone-aware", details={"at": at.isoformat()})


T = TypeVar("T")


class MarketDataSource(Protocol):
    def get_pool_snapshot(self) -> PoolSnapshot: ...
    def get_position_metrics(self, position_id: str) -> PositionMetrics: ...


class PriceHistorySource(Protocol):
    def price_at(self, pool_address: str, at: datetime) -> Optional[Decimal]:
        """Pool price at ``at``; None when the source has no data for that time.

        Raises DataUnavailableError when the source is unreachable.
        """
        ...


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        raw = self.base_delay * (self.multiplier ** (attempt - 1))
        raw = min(raw, self.max_delay)
        if self.jitter:
            raw += random.uniform(0, self.jitter * raw)
        return raw


def fetch_with_backoff(
    fn: Callable[..., T],
    *args,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    attempt = 1
    while True:
        try:
            return fn(*args, **kwargs)
        except DataUnavailableError as e:
            if attempt >= policy.attempts:
                log.warning("data_fetch_exhausted", attempts=attempt, error=e.message)
                raise
            delay = policy.delay_for(attempt)
            log.info("data_fetch_retry", attempt=attempt, delay=round(delay, 3), error=e.message)
            sleep(delay)
            attempt += 1


class InMemoryMarketData:
    def __init__(self):
        self._lock = threading.Lock()
        self._pool: Optional[PoolSnapshot] = None
        self._positions: dict[str, PositionMetrics] = {}
        self._history: dict[str, list[tuple[datetime, Decimal]]] = {}
        self.offline = False

    def set_pool_snapshot(self, snapshot: PoolSnapshot) -> None:
        with self._lock:
            self._pool = snapshot

    def set_position_metrics(self, metrics: PositionMetrics) -> None:
        with self._lock:
            self._positions[metrics.position_id] = metrics

    def record_price(self, pool_address: str, at: datetime, price: Decimal) -> None:
        _require_aware(at)
        with self._lock:
            series = self._history.setdefault(pool_address.lower(), [])
            bisect.insort(series, (at, price))

    def get_pool_snapshot(self) -> PoolSnapshot:
        with self._lock:
            if self.offline or self._pool is None:
                raise DataUnavailableError("Pool snapshot unavailable")
            return self._pool

    def get_position_metrics(self, position_id: str) -> PositionMetrics:
        with self._lock:
            metrics = self._positions.get(position_id)
        if self.offline or metrics is None:
            raise DataUnavailableError("Position metrics unavailable", details={"position_id": position_id})
        return metrics

    def price_at(self, pool_address: str, at: datetime) -> Optional[Decimal]:
        _require_aware(at)
        if self.offline:
            raise DataUnavailableError("Price history source unreachable")
        with self._lock:
            series = self._history.get(pool_address.lower(), [])
            times = [t for t, _ in series]
            idx = bisect.bisect_right(times, at)
            if idx == 0:
                return None
            return series[idx - 1][1]
