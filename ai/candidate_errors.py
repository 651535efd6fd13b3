"""
Per-symbol AI call health ledger.

Tracks success/error outcomes for every screened symbol, acts as a
per-symbol circuit breaker (temporary blacklist after repeated consecutive
failures) and derives the global AI health status shown on the dashboard.

Blacklist expiry is lazy: a deadline is compared against the clock whenever
a record is read; there is no background sweep.
"""

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from core.exceptions import ErrorKind

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class SymbolHealthRecord:
    symbol: str
    consecutive_errors: int = 0
    total_errors: int = 0
    successful_calls: int = 0
    blacklisted_until: Optional[float] = None
    last_fallback_used: bool = False
    fallbacks_used: int = 0
    last_error_kind: Optional[ErrorKind] = None
    last_error_at: float = 0.0
    next_retry_at: float = 0.0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)


@dataclass
class GlobalAIHealthMetrics:
    total_calls: int
    successful_calls: int
    total_errors: int
    current_blacklists: int
    fallbacks_used: int
    last_health_check: float
    errors_by_kind: Dict[str, int] = field(default_factory=dict)


@dataclass
class AIHealthStatus:
    """Payload polled by the dashboard health badge."""
    success_rate: float
    status: HealthStatus
    active_blacklists: int
    total_errors: int
    fallbacks_used: int
    last_update: float

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        d["success_rate"] = round(self.success_rate, 4)
        return d


class CandidateErrorManager:
    """
    Outcome ledger keyed by trading symbol.

    Thresholds:
    - ``blacklist_threshold`` consecutive errors blacklist a symbol
    - blacklist lasts ``blacklist_minutes`` and is not lifted early by a success
    - success rate < ``critical_success_rate`` => CRITICAL
    - success rate < ``degraded_success_rate`` or > ``degraded_blacklist_count``
      blacklisted symbols => DEGRADED
    """

    BACKOFF_BASE_SECONDS = 2.0
    BACKOFF_CAP_SECONDS = 30.0
    BACKOFF_JITTER_SECONDS = 1.0

    def __init__(
        self,
        blacklist_threshold: int = 5,
        blacklist_minutes: float = 30.0,
        critical_success_rate: float = 0.6,
        degraded_success_rate: float = 0.8,
        degraded_blacklist_count: int = 5,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        if blacklist_threshold < 1:
            raise ValueError("blacklist_threshold must be >= 1")
        self.blacklist_threshold = int(blacklist_threshold)
        self.blacklist_seconds = float(blacklist_minutes) * 60.0
        self.critical_success_rate = float(critical_success_rate)
        self.degraded_success_rate = float(degraded_success_rate)
        self.degraded_blacklist_count = int(degraded_blacklist_count)
        self._clock = clock
        self._jitter = jitter
        self._records: Dict[str, SymbolHealthRecord] = {}
        self._unattributed_fallbacks = 0
        self._listeners: List[Callable[["CandidateErrorManager"], None]] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: Callable[["CandidateErrorManager"], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def record_error(self, symbol: str, kind: Union[ErrorKind, str]) -> bool:
        """
        Record a failed call for ``symbol``.

        Returns:
            True if this error put the symbol on the blacklist
        """
        kind = ErrorKind(kind)
        with self._lock:
            now = self._clock()
            record = self._get_or_create(symbol)
            self._expire_locked(record, now)

            record.consecutive_errors += 1
            record.total_errors += 1
            record.last_error_kind = kind
            record.last_error_at = now
            record.errors_by_kind[kind.value] = record.errors_by_kind.get(kind.value, 0) + 1

            backoff = min(
                self.BACKOFF_BASE_SECONDS * (2 ** (record.consecutive_errors - 1)),
                self.BACKOFF_CAP_SECONDS,
            )
            record.next_retry_at = now + backoff + self._jitter(0.0, self.BACKOFF_JITTER_SECONDS)

            newly_blacklisted = False
            if record.consecutive_errors >= self.blacklist_threshold and not self._is_active(record, now):
                record.blacklisted_until = now + self.blacklist_seconds
                newly_blacklisted = True
                logger.warning(
                    f"Symbol {symbol} blacklisted for {self.blacklist_seconds / 60:.0f}m after "
                    f"{record.consecutive_errors} consecutive errors (last={kind.value})"
                )

            self._notify_locked()
            return newly_blacklisted

    def record_success(self, symbol: str) -> None:
        with self._lock:
            now = self._clock()
            record = self._get_or_create(symbol)
            self._expire_locked(record, now)
            record.consecutive_errors = 0
            record.successful_calls += 1
            record.next_retry_at = now
            self._notify_locked()

    def record_fallback_used(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._unattributed_fallbacks += 1
            else:
                record = self._get_or_create(symbol)
                record.last_fallback_used = True
                record.fallbacks_used += 1
            self._notify_locked()

    def is_blacklisted(self, symbol: str) -> bool:
        with self._lock:
            record = self._records.get(symbol)
            if record is None:
                return False
            return self._expire_locked(record, self._clock())

    def can_retry(self, symbol: str) -> bool:
        """False while blacklisted or inside the symbol's backoff window."""
        with self._lock:
            record = self._records.get(symbol)
            if record is None:
                return True
            now = self._clock()
            if self._expire_locked(record, now):
                return False
            return now >= record.next_retry_at

    def clear_blacklist(self, symbol: str) -> bool:
        """Manual override. Returns True if the symbol had a record."""
        with self._lock:
            record = self._records.get(symbol)
            if record is None:
                return False
            record.blacklisted_until = None
            record.consecutive_errors = 0
            record.next_retry_at = self._clock()
            logger.info(f"Blacklist manually cleared for {symbol}")
            self._notify_locked()
            return True

    def get_record(self, symbol: str) -> Optional[SymbolHealthRecord]:
        with self._lock:
            record = self._records.get(symbol)
            if record is None:
                return None
            self._expire_locked(record, self._clock())
            return replace(record, errors_by_kind=dict(record.errors_by_kind))

    def get_blacklisted_symbols(self) -> List[str]:
        with self._lock:
            now = self._clock()
            return sorted(s for s, r in self._records.items() if self._expire_locked(r, now))

    def get_success_rate(self) -> float:
        with self._lock:
            successes = sum(r.successful_calls for r in self._records.values())
            errors = sum(r.total_errors for r in self._records.values())
        total = successes + errors
        if total == 0:
            return 1.0
        return successes / total

    def get_health_metrics(self) -> GlobalAIHealthMetrics:
        with self._lock:
            now = self._clock()
            records = list(self._records.values())
            errors_by_kind: Dict[str, int] = {}
            for record in records:
                for kind, count in record.errors_by_kind.items():
                    errors_by_kind[kind] = errors_by_kind.get(kind, 0) + count
            successes = sum(r.successful_calls for r in records)
            errors = sum(r.total_errors for r in records)
            return GlobalAIHealthMetrics(
                total_calls=successes + errors,
                successful_calls=successes,
                total_errors=errors,
                current_blacklists=sum(1 for r in records if self._expire_locked(r, now)),
                fallbacks_used=sum(r.fallbacks_used for r in records) + self._unattributed_fallbacks,
                last_health_check=now,
                errors_by_kind=errors_by_kind,
            )

    def get_health_status(self) -> AIHealthStatus:
        with self._lock:
            metrics = self.get_health_metrics()
            success_rate = self.get_success_rate()

        if success_rate < self.critical_success_rate:
            status = HealthStatus.CRITICAL
        elif success_rate < self.degraded_success_rate or metrics.current_blacklists > self.degraded_blacklist_count:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return AIHealthStatus(
            success_rate=success_rate,
            status=status,
            active_blacklists=metrics.current_blacklists,
            total_errors=metrics.total_errors,
            fallbacks_used=metrics.fallbacks_used,
            last_update=metrics.last_health_check,
        )

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._unattributed_fallbacks = 0
            self._notify_locked()

    def _get_or_create(self, symbol: str) -> SymbolHealthRecord:
        record = self._records.get(symbol)
        if record is None:
            record = SymbolHealthRecord(symbol=symbol)
            self._records[symbol] = record
        return record

    @staticmethod
    def _is_active(record: SymbolHealthRecord, now: float) -> bool:
        return record.blacklisted_until is not None and record.blacklisted_until > now

    def _expire_locked(self, record: SymbolHealthRecord, now: float) -> bool:
        """Return blacklist state, clearing an expired deadline in place."""
        if record.blacklisted_until is None:
            return False
        if record.blacklisted_until > now:
            return True
        record.blacklisted_until = None
        record.consecutive_errors = 0
        logger.info(f"Blacklist expired for {record.symbol}")
        return False

    def _notify_locked(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as exc:
                logger.warning(f"AI health listener failed: {exc}")
