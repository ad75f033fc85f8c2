"""
Structured JSON logging and the per-request log line.

Every record carries an ISO-8601 `ts`, the `level` and, while a request is
being served, its `request_id`. RequestLoggingMiddleware writes one line per
request; POST /messages enriches it with the pipeline fields set through
log_pipeline_data.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from replyhub.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_LOGGER = "replyhub.requests"

# Loggers that would otherwise print their own plain-text format
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding millisecond UTC `ts`, `level` and `request_id`."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = created.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record to stdout as one JSON object per line.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs each outbound URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _route_path(request: Request) -> Optional[str]:
    route = request.scope.get("route")
    return getattr(route, "path", None)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line and one metrics sample per request.

    Log keys: request_id, method, path, route, status, latency_ms, plus
    user_message_id, ai_message_id, generation and dispatch on
    POST /messages. The request id is also returned as X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            route_path = _route_path(request)
            if request.url.path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "pipeline_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger(REQUEST_LOGGER).log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_pipeline_data(
    request: Request,
    user_message_id: Optional[str] = None,
    ai_message_id: Optional[str] = None,
    generation: Optional[str] = None,
    dispatch: Optional[str] = None,
) -> None:
    """
    Attach reply-pipeline fields to the request log line.

    dispatch is "skipped" when no reply was sent.
    """
    fields = {
        "user_message_id": user_message_id,
        "ai_message_id": ai_message_id,
        "generation": generation,
    }
    data = {key: value for key, value in fields.items() if value is not None}
    data["dispatch"] = dispatch or "skipped"
    request.state.pipeline_log_data = data
