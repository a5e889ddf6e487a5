from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional


HEALTH_PATH = "/health"
MAX_ERROR_CHARS = 300

logger = logging.getLogger("wikaipedia.agent")


@dataclass
class ListenerStatus:
    """Counters for the push listener, safe to read from the health server thread."""

    connected: bool = False
    processed_events: int = 0
    submitted_answers: int = 0
    last_error: str = ""
    last_event_at: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def set_connected(self, connected: bool) -> None:
        with self._lock:
            self.connected = connected

    def record_event(self) -> None:
        with self._lock:
            self.processed_events += 1
            self.last_event_at = datetime.now(timezone.utc).isoformat()

    def record_answer(self) -> None:
        with self._lock:
            self.submitted_answers += 1

    def record_error(self, message: Any) -> None:
        with self._lock:
            self.last_error = str(message)[:MAX_ERROR_CHARS]

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "connected": self.connected,
                "processedEvents": self.processed_events,
                "submittedAnswers": self.submitted_answers,
                "lastError": self.last_error,
                "lastEventAt": self.last_event_at,
            }


class _StatusServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, status: ListenerStatus):
        super().__init__(address, _StatusHandler)
        self.status = status


class _StatusHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path.split("?")[0] != HEALTH_PATH:
            self.send_error(HTTPStatus.NOT_FOUND, "not found")
            return
        body = json.dumps(self.server.status.to_dict()).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug("status-server %s", format % args)


def start_status_server(status: ListenerStatus, port: int, host: str = "127.0.0.1") -> _StatusServer:
    """Serve ``status`` as JSON on ``GET /health`` from a daemon thread.

    Port 0 binds an ephemeral port; read it back from ``server.server_address``.
    """
    server = _StatusServer((host, int(port)), status)
    thread = threading.Thread(target=server.serve_forever, name="listener-status", daemon=True)
    thread.start()
    logger.info("Listener status server on http://%s:%s%s", host, server.server_address[1], HEALTH_PATH)
    return server


def stop_status_server(server: Optional[_StatusServer]) -> None:
    if server is None:
        return
    server.shutdown()
    server.server_close()
