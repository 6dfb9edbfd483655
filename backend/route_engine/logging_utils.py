from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "route_engine"
LOG_FILE_NAME = "route_engine.log.jsonl"
REDACTED = "***"

# Extra fields that may carry provider credentials.
_SENSITIVE_FIELDS = frozenset(
    {"mapbox_token", "ors_api_key", "ors_key", "access_token", "authorization", "credential"}
)


class RouteJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record; credential fields are masked."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        for key in list(log_record):
            if key.lower() in _SENSITIVE_FIELDS and log_record[key]:
                log_record[key] = REDACTED
        log_record.setdefault("event", record.getMessage())


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _writable_log_dir(out_dir: str) -> Path | None:
    # The offline cache lives under out_dir too; fall back to tmp when it is read-only.
    for log_dir in (Path(out_dir) / "logs", Path(gettempdir()) / LOGGER_NAME / "logs"):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _build_handlers(formatter: logging.Formatter) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = _writable_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"))
        except OSError:
            pass
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)

    # Resolver, relay and CLI all import this; configure once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = RouteJsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    for handler in _build_handlers(formatter):
        logger.addHandler(handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    if not LOGGER.isEnabledFor(level):
        return
    LOGGER.log(level, event, extra={"event": event, **fields})
