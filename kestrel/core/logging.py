# kestrel/core/logging.py
"""Logging setup for applications embedding kestrel."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

_STANDARD_ATTRS = frozenset(
    {
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
)

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s"


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level_name: str = "INFO"
    console_format: str = "text"  # text|json
    file_path: Optional[str] = None
    file_format: str = "json"  # text|json
    logger_name: str = "kestrel"


class JsonFormatter(logging.Formatter):
    """JSON formatter with extra-field preservation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        extras = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extras:
            payload["fields"] = extras
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _formatter(kind: str) -> logging.Formatter:
    if kind == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(config: LoggingConfig = LoggingConfig()) -> logging.Logger:
    """Attach console (and optional file) handlers to the kestrel logger."""
    logger = logging.getLogger(config.logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers: List[logging.Handler] = []
    console = logging.StreamHandler()
    console.setFormatter(_formatter(config.console_format))
    handlers.append(console)

    if config.file_path:
        path = Path(config.file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8", delay=True)
        file_handler.setFormatter(_formatter(config.file_format))
        handlers.append(file_handler)

    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, config.level_name.upper(), logging.INFO))
    logger.propagate = False
    return logger
