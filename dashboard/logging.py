from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Dict

from flask import Flask, g, request
from flask.signals import got_request_exception

# Record attributes copied into the JSON payload when present
_CONTEXT_FIELDS = ("method", "path", "status_code", "duration_ms", "device", "bus_id")

# Long-lived streams would log a "request complete" line per client connect
_QUIET_PATHS = {"/api/events"}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, tagged with request and fleet context."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - base class contract
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or current_request_id()
        if request_id:
            payload["request_id"] = request_id

        # Scheduler ticks log from worker threads; name them so a crash check
        # can be followed across lines.
        if record.threadName != threading.main_thread().name:
            payload["thread"] = record.threadName

        for attribute in _CONTEXT_FIELDS:
            value = getattr(record, attribute, None)
            if value is not None:
                payload[attribute] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True)


def current_request_id() -> str | None:
    """Return the request ID for the active request context if present."""

    try:
        return getattr(g, "request_id", None)
    except RuntimeError:
        return None


def _route_context() -> Dict[str, Any]:
    view_args = request.view_args or {}
    context = {
        "request_id": current_request_id(),
        "method": request.method,
        "path": request.path,
    }
    for key in ("device", "bus_id"):
        if key in view_args:
            context[key] = view_args[key]
    return context


def init_logging(app: Flask, level: str = "INFO") -> None:
    """Send app, fleet and scheduler logs through the JSON formatter."""

    log_level = getattr(logging, str(level).upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.setLevel(log_level)
    app.logger.propagate = False

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Job-executed lines on every two-second tick are noise at INFO
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))

    @app.before_request
    def _inject_request_id() -> None:  # pragma: no cover - flask runtime hook
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        g.request_started = time.time()

    @app.after_request
    def _log_request(response):  # pragma: no cover - flask runtime hook
        context = _route_context()
        if context["request_id"]:
            response.headers["X-Request-ID"] = context["request_id"]

        started = getattr(g, "request_started", None)
        if isinstance(started, (int, float)):
            context["duration_ms"] = round((time.time() - started) * 1000, 2)
        context["status_code"] = response.status_code

        quiet = request.path in _QUIET_PATHS and response.status_code < 400
        app.logger.log(logging.DEBUG if quiet else logging.INFO, "request complete", extra=context)
        return response

    @got_request_exception.connect_via(app)
    def _log_exception(sender, exception, **kwargs):  # pragma: no cover - runtime hook
        exc_info = (type(exception), exception, exception.__traceback__)
        app.logger.error("request error", exc_info=exc_info, extra=_route_context())
