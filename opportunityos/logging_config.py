from __future__ import annotations

import contextvars
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


_run_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
_opportunity_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("opportunity_id", default="")


def set_run_id(run_id: str) -> None:
    _run_id_ctx.set(str(run_id or ""))


def clear_run_id() -> None:
    _run_id_ctx.set("")


@contextmanager
def opportunity_context(opportunity_id: str) -> Iterator[None]:
    token = _opportunity_id_ctx.set(str(opportunity_id or ""))
    try:
        yield
    finally:
        _opportunity_id_ctx.reset(token)


_SKIP_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "taskName",
}


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "") or _run_id_ctx.get(),
            "opportunity_id": getattr(record, "opportunity_id", "") or _opportunity_id_ctx.get(),
        }
        event_type = getattr(record, "event_type", None)
        if event_type:
            payload["event_type"] = event_type

        for key, value in record.__dict__.items():
            if key not in _SKIP_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level_name: str | None = None) -> None:
    resolved = (level_name or os.getenv("OPPORTUNITYOS_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, resolved, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
