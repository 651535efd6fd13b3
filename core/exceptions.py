"""Shared exception types and error classification for the resilience layer."""

from enum import Enum
from typing import Optional, Sequence

from requests import exceptions as requests_exceptions


class ErrorKind(str, Enum):
    PROXY = "PROXY"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH_FAIL"
    VALIDATION = "VALIDATION"
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    MALFORMED_JSON = "MALFORMED_JSON"
    HALLUCINATION = "HALLUCINATION"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class TradingApiError(Exception):
    """Base class for expected failures of outbound exchange/LLM calls."""

    kind: ErrorKind = ErrorKind.SERVER_ERROR


class ProxyError(TradingApiError):
    """Exchange proxy unreachable or returned a transport-level failure."""

    kind = ErrorKind.PROXY

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TradingApiError):
    """Upstream asked us to back off; ``retry_after`` is in seconds."""

    kind = ErrorKind.RATE_LIMIT
    DEFAULT_RETRY_AFTER = 60

    def __init__(self, retry_after: Optional[float] = None, message: str = "Rate limit exceeded"):
        super().__init__(message)
        self.retry_after = float(retry_after) if retry_after is not None else float(self.DEFAULT_RETRY_AFTER)

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> "RateLimitError":
        try:
            retry_after = float(header_value) if header_value else cls.DEFAULT_RETRY_AFTER
        except (TypeError, ValueError):
            retry_after = cls.DEFAULT_RETRY_AFTER
        return cls(retry_after=retry_after)


class ApiError(TradingApiError):
    """Non-retryable API response (4xx other than 429)."""

    kind = ErrorKind.VALIDATION

    def __init__(self, status: int, reason: str = ""):
        super().__init__(f"API Error: {status} {reason}".strip())
        self.status = status
        self.reason = reason


class AuthError(ApiError):
    kind = ErrorKind.AUTH


class AITimeoutError(TradingApiError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_ms: float, request_type: str = "detail", asset_pair: Optional[str] = None):
        super().__init__(f"AI request timeout after {timeout_ms:.0f}ms")
        self.timeout_ms = timeout_ms
        self.request_type = request_type
        self.asset_pair = asset_pair


class AIParsingError(TradingApiError):
    kind = ErrorKind.MALFORMED_JSON

    def __init__(self, message: str, raw_response: str = "", parse_stage: str = "json",
                 asset_pair: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response
        self.parse_stage = parse_stage
        self.asset_pair = asset_pair


class AIHallucinationError(TradingApiError):
    kind = ErrorKind.HALLUCINATION

    def __init__(self, detected_symbol: str, expected_symbols: Sequence[str]):
        super().__init__(f"AI hallucination detected: {detected_symbol} not in expected symbols")
        self.detected_symbol = detected_symbol
        self.expected_symbols = list(expected_symbols)


class AIModelError(TradingApiError):
    """Model provider error; ``error_type`` is auth, rate_limit, server or unknown."""

    _KINDS = {
        "auth": ErrorKind.AUTH,
        "rate_limit": ErrorKind.RATE_LIMIT,
        "server": ErrorKind.SERVER_ERROR,
        "unknown": ErrorKind.SERVER_ERROR,
    }

    def __init__(self, message: str, model: str, error_type: str = "unknown",
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.model = model
        self.error_type = error_type
        self.status_code = status_code
        self.kind = self._KINDS.get(error_type, ErrorKind.SERVER_ERROR)


class ReadinessError(RuntimeError):
    """Raised when a caller insists on simulating without a fresh snapshot."""

    def __init__(self, state: str, reason: Optional[str] = None):
        super().__init__(f"Simulation not ready (state={state}, reason={reason})")
        self.state = state
        self.reason = reason


def classify_error(error: BaseException) -> Optional[ErrorKind]:
    """
    Map an exception to its ErrorKind by type.

    Returns None for anything that is not an expected failure mode; callers
    must let those propagate.
    """
    if isinstance(error, TradingApiError):
        return error.kind
    if isinstance(error, (requests_exceptions.Timeout, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, requests_exceptions.ConnectionError):
        return ErrorKind.PROXY
    if isinstance(error, requests_exceptions.HTTPError):
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None) or 0
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status in (401, 403):
            return ErrorKind.AUTH
        if 400 <= status < 500:
            return ErrorKind.VALIDATION
        return ErrorKind.SERVER_ERROR
    return None


def is_retryable(kind: Optional[ErrorKind]) -> bool:
    """Auth/validation failures are terminal for the current call."""
    return kind is not None and kind not in (ErrorKind.AUTH, ErrorKind.VALIDATION)
