from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy, celery) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        context = {
            key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS
        }
        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        bound = logger.bind(stdlib_logger=record.name, **context)
        bound.opt(depth=6, exception=record.exc_info).log(level, message)


def _json_sink(metadata: Dict[str, Any]):
    def sink(message: "logger.Message") -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **metadata,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = f"{span_context.trace_id:032x}"
            payload["span_id"] = f"{span_context.span_id:016x}"

        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)

        payload.update(record["extra"])
        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return sink


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Route Loguru and stdlib logging to a single structured JSON stream."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(_json_sink(metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
