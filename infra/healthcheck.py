"""HTTP health endpoint reporting keeper liveness and vault regime."""

from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def keeper_status(
    last_poll_at: Optional[float],
    regime: str,
    consecutive_failures: int,
    max_poll_age: float,
    max_failures: int = 5,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Health payload for the keeper.

    Unhealthy when no poll has happened within max_poll_age seconds or when
    the loop has failed max_failures times in a row.
    """
    now = time.time() if now is None else now
    age = None if last_poll_at is None else max(0.0, now - last_poll_at)
    stale = age is None or age > max_poll_age
    failing = consecutive_failures >= max_failures
    return {
        "ok": not stale and not failing,
        "regime": regime,
        "last_poll_age_seconds": age,
        "consecutive_failures": consecutive_failures,
    }


class HealthServer:
    """Simple JSON health server with pluggable status provider."""

    def __init__(self, port: int, status_provider: Callable[[], Dict[str, Any]], host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._status_provider)
        self._server = HTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:  # pragma: no cover
            logger.warning("Failed shutting down health server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(status_provider: Callable[[], Dict[str, Any]]):
        provider = status_provider

        class HealthHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                if self.path not in ("/", "/health", "/healthz"):
                    self.send_response(404)
                    self.end_headers()
                    return

                try:
                    payload = provider() or {}
                except Exception as exc:
                    logger.error("Health status provider failed: %s", exc)
                    payload = {"ok": False, "error": str(exc)}
                ok = bool(payload.get("ok", True))
                body = json.dumps(payload).encode("utf-8")

                self.send_response(200 if ok else 503)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return HealthHandler


__all__ = ["HealthServer", "keeper_status"]
