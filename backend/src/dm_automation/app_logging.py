"""Logging setup for the DM automation service.

Application loggers live under the ``dm_automation`` namespace. When an app is
passed to :func:`init_logging` an HTTP middleware writes one access line per
request and echoes an ``X-Request-Id`` header for correlation.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "dm_automation"
ACCESS_LOGGER_NAME = "dm_automation.access"


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-goog-api-key",
    "x-api-key",
}


def _scrub(data: object) -> object:
    if isinstance(data, dict):
        return {k: ("***" if k.lower() in SENSITIVE_FIELDS else _scrub(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _install_access_logging(app: FastAPI, *, skip_paths: set[str]) -> None:
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.time()

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 2),
            "client_ip": client_ip,
            "headers": _scrub(dict(request.headers)),
        }
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data, default=str))
        return response


def init_logging(
    app: FastAPI | None = None,
    *,
    level: str = "INFO",
    json_logs: bool = False,
    skip_paths: set[str] | None = None,
) -> None:
    """Attach a stderr handler to the package logger and install access logging."""
    formatter = _get_formatter(json_logs)
    log_level = getattr(logging, level.upper(), logging.INFO)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)
    else:
        for handler in app_logger.handlers:
            handler.setFormatter(formatter)
    app_logger.setLevel(log_level)

    if app is not None:
        _install_access_logging(app, skip_paths=skip_paths or set())
