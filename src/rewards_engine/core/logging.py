"""Structured JSON logging for the reward engine with trace correlation."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, TextIO

from loguru import logger
from opentelemetry import trace

_STDLIB_RECORD_FIELDS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "taskName"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (SQLAlchemy, alembic, aiosqlite) to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        context = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_FIELDS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.bind(**context).opt(depth=depth, exception=record.exc_info).log(level, message)


class JsonLogSink:
    """Loguru sink writing one JSON object per line."""

    def __init__(self, metadata: Dict[str, str], stream: TextIO | None = None) -> None:
        self._metadata = dict(metadata)
        self._stream = stream

    def __call__(self, message: "logger.Message") -> None:
        stream = self._stream or sys.stdout
        stream.write(json.dumps(self.render(message.record), default=str) + "\n")

    def render(self, record: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **self._metadata,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = format(span_context.trace_id, "032x")
            payload["span_id"] = format(span_context.span_id, "016x")

        payload.update(record["extra"])
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)
        return payload


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    sql_echo: bool = False,
    stream: TextIO | None = None,
) -> int:
    """Replace Loguru's default handler with the JSON sink and route stdlib logging through it."""

    logger.remove()
    handler_id = logger.add(
        JsonLogSink({"service": service_name, "environment": environment, "version": version}, stream),
        level=level,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    return handler_id


__all__ = ["InterceptHandler", "JsonLogSink", "configure_logging"]
