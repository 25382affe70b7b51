"""Root logger setup driven by ``LoggingSettings``."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from .config import settings

_INITIALIZED: bool = False

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once; later calls are no-ops."""
    global _INITIALIZED
    if _INITIALIZED:
        return

    log_level = getattr(logging, (level or settings.logging.level).upper(), logging.INFO)
    formatter: logging.Formatter
    if settings.logging.format.lower() == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if settings.logging.file:
        file_handler = logging.FileHandler(settings.logging.file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _INITIALIZED = True
