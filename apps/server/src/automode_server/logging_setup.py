from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


ROOT_LOGGER = "automode"


def setup_logging(log_level: str | int = logging.INFO, log_file: str | Path | None = None) -> logging.Logger:
    """Configure the ``automode`` logger tree: readable console output, JSON lines in the file."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.debug("automode logging initialized")
    return logger


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            entry.update(extra_fields)
        return json.dumps(entry, default=str)


def log_auto_mode_event(channel: str, payload: dict[str, Any]) -> None:
    """Event subscriber that mirrors every emitted event into the log."""
    fields = {key: value for key, value in payload.items() if key not in ("content", "plan_content", "input")}
    logging.getLogger(f"{ROOT_LOGGER}.events").debug(
        "%s %s",
        channel,
        payload.get("type"),
        extra={"extra_fields": {"channel": channel, **fields}},
    )
