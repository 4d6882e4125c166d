import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Paths excluded from request metrics
_UNMETERED_PATHS = ("/metrics",)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 ts, level and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.addHandler(json_handler)

    # Uvicorn logs go through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Access lines are written by RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    # web3 and httpx are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    For aggregator webhooks, also includes:
    - event_type: webhook event type as received
    - item_id: aggregator item id (when present)
    - result: processing result (processed, ignored, invalid_signature, ...)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - start_time
            if request.url.path not in _UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            logger = logging.getLogger("app.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_event(request: Request, event_type: Optional[str] = None, item_id: Optional[str] = None, result: Optional[str] = None):
    """
    Attach aggregator webhook fields to the request state.
    The middleware merges them into the request log line.
    """
    webhook_data = {}
    if event_type is not None:
        webhook_data["event_type"] = event_type
    if item_id is not None:
        webhook_data["item_id"] = item_id
    if result is not None:
        webhook_data["result"] = result
    request.state.webhook_log_data = webhook_data
