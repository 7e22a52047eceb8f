"""Structured JSON logging with a per-request correlation id."""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import settings

REQUEST_ID_HEADER = "X-Request-ID"
SERVICE_NAME = "notification-core"

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
_logger = logging.getLogger("notification_core")

# Attribute names owned by LogRecord; structured fields must not overwrite them.
_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class ContextFilter(logging.Filter):
    """Inject service name and request id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = SERVICE_NAME
        if not getattr(record, "request_id", None):
            record.request_id = request_id_ctx.get()
        return True


def build_formatter() -> JsonFormatter:
    return JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(service_name)s %(request_id)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
    )


def configure_logging() -> None:
    root = logging.getLogger()
    if any(isinstance(handler.formatter, JsonFormatter) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(build_formatter())
    root.addHandler(handler)
    root.setLevel((settings.log_level or "INFO").upper())


def _extra(event: str, fields: dict[str, Any]) -> dict[str, Any]:
    extra: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        extra[f"field_{key}" if key in _RESERVED_ATTRS else key] = value
    return extra


def log_event(event: str, **fields: Any) -> None:
    _logger.info(event, extra=_extra(event, fields))


def log_warning(event: str, **fields: Any) -> None:
    _logger.warning(event, extra=_extra(event, fields))


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
