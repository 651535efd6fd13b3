"""
Reachability probe for the exchange proxy.

Hits a cheap timestamp endpoint and translates HTTP/transport failures into
the shared error taxonomy so the outcome can be recorded on the
NetworkHealthTracker.
"""

import logging
from typing import Optional

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import (
    ApiError,
    AuthError,
    ErrorKind,
    ProxyError,
    RateLimitError,
    TradingApiError,
    classify_error,
)
from infra.network_health import NetworkHealthTracker

logger = logging.getLogger(__name__)


class ProbeTimeout(TradingApiError):
    """Probe exceeded its timeout; reported as a timeout-kind failure."""

    kind = ErrorKind.TIMEOUT


def raise_for_status(response: requests.Response) -> None:
    """
    Map an HTTP error status onto the error taxonomy.

    Raises:
        RateLimitError: 429 (Retry-After honored, default 60s)
        AuthError: 401/403
        ApiError: other 4xx
        ProxyError: 5xx
    """
    status = response.status_code
    if status == 429:
        raise RateLimitError.from_header(response.headers.get("Retry-After"))
    if status in (401, 403):
        raise AuthError(status, response.reason or "")
    if 400 <= status < 500:
        raise ApiError(status, response.reason or "")
    if status >= 500:
        raise ProxyError(f"Proxy returned {status}", status_code=status)


class ExchangeProbe:
    def __init__(
        self,
        url: str,
        network: NetworkHealthTracker,
        timeout_seconds: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self._network = network
        self._session = session or requests.Session()

    def ping(self) -> dict:
        """
        GET the timestamp endpoint.

        Returns:
            Decoded JSON body (may be empty)

        Raises:
            ProxyError: connection failure (HTTP errors as in ``raise_for_status``)
            ProbeTimeout: request timed out
        """
        try:
            response = self._session.get(self.url, timeout=self.timeout_seconds)
        except requests_exceptions.Timeout as e:
            raise ProbeTimeout(f"Proxy timestamp probe timed out after {self.timeout_seconds:.1f}s") from e
        except requests_exceptions.ConnectionError as e:
            raise ProxyError(f"Proxy unreachable: {e}") from e

        raise_for_status(response)

        try:
            return response.json() or {}
        except ValueError:
            return {}

    def check(self) -> bool:
        """Ping and record the outcome. Returns reachability."""
        try:
            self.ping()
        except Exception as exc:
            if classify_error(exc) is None:
                raise
            self._network.record_error(exc, endpoint="timestamp")
            logger.warning(f"Proxy probe failed: {exc}")
            return False

        self._network.record_success(endpoint="timestamp")
        return True
