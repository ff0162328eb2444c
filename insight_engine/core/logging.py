"""Structured logging for the Insight Engine.

Every line is rendered as space-separated key=value pairs. Identifiers of the
entities a log line is about (jobs, clustering runs, insights, concepts) are
lifted out of `extra` into their own fields so a single insight can be traced
across the clustering, tagging and topic pipelines.
"""

import logging
import sys
from typing import Any

CONTEXT_FIELDS = ("job_id", "run_id", "insight_id", "concept_id", "cluster_id")


class StructuredFormatter(logging.Formatter):
    """Render records as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                fields[key] = value

        fields.update(getattr(record, "extra_data", None) or {})

        line = " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_from_settings() -> int:
    try:
        from insight_engine.core.config import get_settings

        settings = get_settings()
    except Exception:
        # Settings need credentials; scripts and tests may log before they exist
        return logging.INFO

    if settings.LOG_LEVEL:
        return getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    return logging.DEBUG if settings.INSIGHT_ENGINE_ENV == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Logger for `name` with the structured stdout handler attached once."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_settings())

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **context: Any) -> None:
    """
    Log `msg` with extra fields.

    Keys in CONTEXT_FIELDS become first-class fields, anything else
    (counts, durations, task names) is appended after the message.
    """
    extra: dict[str, Any] = {key: context.pop(key) for key in CONTEXT_FIELDS if key in context}
    extra["extra_data"] = context
    logger.log(level, msg, extra=extra)
