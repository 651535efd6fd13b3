"""JSON health endpoint backing the UI connectivity and AI health badges."""

from __future__ import annotations

import json
import logging
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]

_HEALTH_PATHS = ("/", "/health", "/healthz")
_CLEAR_PATH = re.compile(r"^/blacklist/(?P<symbol>[^/]+)/clear/?$")
_NOT_FOUND: Tuple[int, Payload] = (404, {"error": "not found"})


class _BadgeHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, owner: "HealthServer"):
        super().__init__(address, _BadgeRequestHandler)
        self.owner = owner


class _BadgeRequestHandler(BaseHTTPRequestHandler):
    server: _BadgeHTTPServer

    def do_GET(self):  # type: ignore[override]
        self._reply(*self.server.owner.handle_get(urlsplit(self.path).path))

    def do_POST(self):  # type: ignore[override]
        self._reply(*self.server.owner.handle_post(urlsplit(self.path).path))

    def _reply(self, status: int, payload: Payload) -> None:
        encoded = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - keep access logs out of the app log
        return


class HealthServer:
    """
    Routes:
        GET  /health                    full payload (503 when ``ok`` is false)
        GET  /ai-health                 AI health summary
        POST /blacklist/<symbol>/clear  manual blacklist override

    Pass ``port=0`` to bind an ephemeral port; ``port`` reports the bound one.
    """

    def __init__(
        self,
        port: int,
        status_provider: Callable[[], Payload],
        ai_health_provider: Optional[Callable[[], Payload]] = None,
        clear_blacklist: Optional[Callable[[str], bool]] = None,
        host: str = "0.0.0.0",
    ):
        self._address = (host, int(port))
        self._status_provider = status_provider
        self._ai_health_provider = ai_health_provider
        self._clear_blacklist = clear_blacklist
        self._httpd: Optional[_BadgeHTTPServer] = None
        self._serve_thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._httpd.server_address[1] if self._httpd is not None else None

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._httpd = _BadgeHTTPServer(self._address, self)
        self._serve_thread = threading.Thread(target=self._httpd.serve_forever, name="HealthServer", daemon=True)
        self._serve_thread.start()
        logger.info("Health server listening on %s:%s", self._address[0], self.port)

    def stop(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        try:
            httpd.shutdown()
            httpd.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down health server: %s", exc)
        if self._serve_thread is not None:
            self._serve_thread.join(timeout=3)
            self._serve_thread = None

    def handle_get(self, path: str) -> Tuple[int, Payload]:
        if path in _HEALTH_PATHS:
            payload = self._status_provider() or {}
            return (200 if payload.get("ok", True) else 503), payload
        if path == "/ai-health" and self._ai_health_provider is not None:
            return 200, self._ai_health_provider() or {}
        return _NOT_FOUND

    def handle_post(self, path: str) -> Tuple[int, Payload]:
        match = _CLEAR_PATH.match(path)
        if match is None or self._clear_blacklist is None:
            return _NOT_FOUND
        symbol = unquote(match.group("symbol"))
        cleared = bool(self._clear_blacklist(symbol))
        logger.info("Manual blacklist clear for %s: %s", symbol, "cleared" if cleared else "not blacklisted")
        return 200, {"symbol": symbol, "cleared": cleared}


__all__ = ["HealthServer"]
