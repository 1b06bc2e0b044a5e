"""
Lead Reminders — Structured Logging.
JSON log lines (python-json-logger) to stdout and rotating files, plus an
errors-only file for alerting. Every record carries service/environment
fields so scheduler output can be filtered per deployment.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from pythonjsonlogger import json as jsonlogger

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosmtplib", "sqlalchemy.engine", "uvicorn.access")


class ServiceContextFilter(logging.Filter):
    """Stamps static deployment fields onto every record."""

    def __init__(self, service: str, environment: str, version: str):
        super().__init__()
        self.service = service
        self.environment = environment
        self.version = version

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.environment = self.environment
        record.version = self.version
        return True


def _build_formatter(json_format: bool) -> logging.Formatter:
    if not json_format:
        return logging.Formatter(
            fmt="%(asctime)s │ %(levelname)-8s │ %(name)-32s │ %(message)s",
            datefmt="%H:%M:%S",
        )
    return jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def _rotating(path: Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=str(path), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: str | None = "logs/reminders.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    json_format: bool = True,
    error_file: str = "errors.log",
    service: str = "lead-reminders",
    environment: str = "development",
    version: str = "",
) -> logging.Logger:
    """
    Configure the root logger for the reminder service.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Main log file (None = stdout only)
        max_bytes: Size before a file is rotated
        backup_count: Rotated files kept per log
        json_format: JSON lines (True) or aligned plain text (False)
        error_file: Errors-only log, created next to `log_file`
        service / environment / version: static fields added to every record
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = _build_formatter(json_format)
    context = ServiceContextFilter(service, environment, version)

    handlers: list[logging.Handler] = []
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    handlers.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating(log_path, logging.DEBUG, max_bytes, backup_count))
        handlers.append(_rotating(log_path.parent / error_file, logging.ERROR, max_bytes, backup_count))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root_logger.addHandler(handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)

    return root_logger
