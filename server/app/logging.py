"""JSON log records for the interaction server, plus per-request access logs."""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

SERVICE_NAME = "discord-relay-server"

access_logger = logging.getLogger("relay.http")

# Attributes copied from ``extra={...}`` into the JSON object when present.
_EXTRA_FIELDS = (
    # request
    "method", "path", "status", "duration_ms", "client_ip",
    # routing
    "kind", "key", "agent", "channel",
)

_QUIET_PATHS = frozenset({"/health"})


class JSONFormatter(logging.Formatter):
    """One JSON object per record, timestamps in UTC."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "service": SERVICE_NAME,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            {name: getattr(record, name) for name in _EXTRA_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(debug: bool = False) -> None:
    """Route every ``relay.*`` logger to stderr as JSON.

    Replaces handlers from an earlier call so repeated app creation does
    not duplicate output.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    relay = logging.getLogger("relay")
    relay.handlers.clear()
    relay.addHandler(handler)
    relay.setLevel(logging.DEBUG if debug else logging.INFO)
    relay.propagate = False


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line per request; health checks only at debug level."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = round((time.perf_counter() - started) * 1000, 1)

        path = request.url.path
        level = logging.DEBUG if path in _QUIET_PATHS else logging.INFO
        access_logger.log(
            level,
            "%s %s -> %d (%.1fms)",
            request.method, path, response.status_code, elapsed,
            extra={
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "duration_ms": elapsed,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )
        return response
