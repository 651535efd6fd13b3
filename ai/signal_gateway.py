"""
Guarded access to the signal-generation pipeline.

GuardedSignalService wraps the raw LLM call: it refuses blacklisted symbols,
validates the model output, and records every outcome into the health
ledgers. Expected failures never escape; callers get None (or a fallback
HOLD signal) instead.

ScreeningGate is the pipeline integration point that decides which symbols
may be screened and how many screening calls may run at once.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from ai.candidate_errors import CandidateErrorManager, HealthStatus
from ai.response_validator import ResponseValidator
from core.exceptions import ErrorKind, classify_error
from core.models import Signal
from infra.network_health import NetworkHealthTracker

logger = logging.getLogger(__name__)

# Errors that say nothing about the exchange proxy
_MODEL_ONLY_KINDS = (ErrorKind.MALFORMED_JSON, ErrorKind.HALLUCINATION)


class GuardedSignalService:
    """
    ``provider(asset_pair) -> str`` performs the actual model call (with its
    own timeout) and returns the raw response text.
    """

    def __init__(
        self,
        provider: Callable[[str], str],
        error_manager: CandidateErrorManager,
        network: NetworkHealthTracker,
        validator: Optional[ResponseValidator] = None,
        endpoint: str = "llm",
    ):
        self._provider = provider
        self._errors = error_manager
        self._network = network
        self._validator = validator or ResponseValidator()
        self._endpoint = endpoint
        self._last_error: Dict[str, Optional[ErrorKind]] = {}
        self._lock = threading.Lock()

    def last_call_failed(self, asset_pair: str) -> bool:
        """True if the most recent call for ``asset_pair`` ended in an error."""
        with self._lock:
            return self._last_error.get(asset_pair) is not None

    def last_error_kind(self, asset_pair: str) -> Optional[ErrorKind]:
        with self._lock:
            return self._last_error.get(asset_pair)

    def generate_detailed_signal(self, asset_pair: str) -> Optional[Signal]:
        if self._errors.is_blacklisted(asset_pair):
            logger.info(f"Skipping signal for blacklisted symbol {asset_pair}")
            self._set_outcome(asset_pair, None)
            return None

        try:
            raw = self._provider(asset_pair)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is None:
                raise
            self._network.record_error(exc, endpoint=self._endpoint)
            # Transport failures are not the symbol's fault
            if kind != ErrorKind.PROXY:
                self._errors.record_error(asset_pair, kind)
            self._set_outcome(asset_pair, kind)
            logger.warning(f"Signal call for {asset_pair} failed ({kind.value}): {exc}")
            return None

        self._network.record_success(endpoint=self._endpoint)
        result = self._validator.validate_detailed_signal(raw, asset_pair)
        if not result.is_valid:
            kind = result.error.kind if result.error is not None else ErrorKind.MALFORMED_JSON
            if kind not in _MODEL_ONLY_KINDS:
                kind = ErrorKind.MALFORMED_JSON
            self._errors.record_error(asset_pair, kind)
            self._errors.record_fallback_used(asset_pair)
            self._set_outcome(asset_pair, kind)
            return result.signal

        self._errors.record_success(asset_pair)
        self._set_outcome(asset_pair, None)
        return result.signal

    def _set_outcome(self, asset_pair: str, kind: Optional[ErrorKind]) -> None:
        with self._lock:
            self._last_error[asset_pair] = kind


class ScreeningGate:
    """
    Admission policy for screening work.

    - blacklisted symbols are never submitted
    - DEGRADED halves concurrency, CRITICAL drops it to 1 (or pauses)
    """

    def __init__(self, error_manager: CandidateErrorManager, base_concurrency: int = 4, pause_on_critical: bool = False):
        if base_concurrency < 1:
            raise ValueError("base_concurrency must be >= 1")
        self._errors = error_manager
        self.base_concurrency = int(base_concurrency)
        self.pause_on_critical = bool(pause_on_critical)

    def admit(self, symbols: Iterable[str]) -> List[str]:
        admitted = []
        for symbol in symbols:
            if self._errors.is_blacklisted(symbol):
                logger.debug(f"Screening gate rejected blacklisted symbol {symbol}")
                continue
            admitted.append(symbol)
        return admitted

    def max_concurrency(self) -> int:
        status = self._errors.get_health_status().status
        if status == HealthStatus.CRITICAL:
            return 0 if self.pause_on_critical else 1
        if status == HealthStatus.DEGRADED:
            return max(1, self.base_concurrency // 2)
        return self.base_concurrency

    def is_paused(self) -> bool:
        return self.max_concurrency() == 0
