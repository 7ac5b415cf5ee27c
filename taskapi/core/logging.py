"""Structured event logging.

Application modules log through the stdlib ``logging`` tree under the
``taskapi`` logger. A :class:`RingBufferHandler` attached to that logger keeps
the most recent structured entries in memory so they can be inspected through
the admin API, while a console handler streams every record out of process.

Structured fields travel on the record through ``extra``:

    logger.info("Cache hit", extra={"context": {"key": key}, "user_id": uid})
"""

import json
import logging
import sys
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from taskapi.core.config import Settings

APP_LOGGER = "taskapi"

LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}
LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}

META_FIELDS = ("user_id", "request_id", "ip", "user_agent")


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return {k: v for k, v in data.items() if v is not None}


class RingBufferHandler(logging.Handler):
    """Keeps the last ``capacity`` records as :class:`LogEntry` objects.

    ``logging.Handler.handle`` serializes ``emit`` under the handler lock, and
    the reader methods take the same lock, so concurrent writers never lose
    newer entries when the oldest one is evicted.
    """

    def __init__(self, capacity: int = 1000, level: int = logging.DEBUG):
        super().__init__(level)
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        context = getattr(record, "context", None) or {}
        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            level=LEVEL_NAMES.get(record.levelno, record.levelname),
            message=record.getMessage(),
            context=dict(context),
            **{name: getattr(record, name, None) for name in META_FIELDS},
        )
        self._entries.append(entry)

    def entries(self) -> list[LogEntry]:
        with self.lock:
            return list(self._entries)

    def by_level(self, level: str) -> list[LogEntry]:
        return [e for e in self.entries() if e.level == level]

    def by_user(self, user_id: str) -> list[LogEntry]:
        return [e for e in self.entries() if e.user_id == user_id]

    def by_time_range(self, start: datetime, end: datetime) -> list[LogEntry]:
        return [e for e in self.entries() if start <= e.timestamp <= end]

    def query(
        self,
        level: str | None = None,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[LogEntry]:
        """Filter entries and return them newest first."""
        logs = self.entries()
        if level:
            logs = [e for e in logs if e.level == level]
        if user_id:
            logs = [e for e in logs if e.user_id == user_id]
        if start:
            logs = [e for e in logs if e.timestamp >= start]
        if end:
            logs = [e for e in logs if e.timestamp <= end]
        logs.sort(key=lambda e: e.timestamp, reverse=True)
        return logs[: max(limit, 0)]

    def stats(self) -> dict[str, Any]:
        logs = self.entries()
        return {
            "total": len(logs),
            "byLevel": {name: sum(1 for e in logs if e.level == name) for name in LEVELS},
        }

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()


class ColoredFormatter(logging.Formatter):
    """Console formatter with colored level names and the structured context."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        formatted = super().format(record)
        color = self.COLORS.get(record.levelname)
        if color:
            formatted = f"{color}{formatted}{self.RESET}"
        context = getattr(record, "context", None)
        if context:
            formatted = f"{formatted} {json.dumps(context, default=str)}"
        return formatted


def setup_logging(settings: Settings) -> RingBufferHandler:
    """Attach the console and ring buffer handlers to the application logger.

    Safe to call more than once; a previous buffer is replaced.
    """
    app_logger = logging.getLogger(APP_LOGGER)
    app_logger.setLevel(logging.DEBUG)
    app_logger.propagate = False

    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    console.setFormatter(
        ColoredFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    app_logger.addHandler(console)

    buffer = RingBufferHandler(capacity=settings.log_buffer_size)
    app_logger.addHandler(buffer)

    for name, level in {"uvicorn.access": logging.WARNING, "httpx": logging.WARNING}.items():
        logging.getLogger(name).setLevel(level)

    app_logger.info(f"Logging configured with level: {settings.log_level.upper()}")
    return buffer


class EventLogger:
    """Domain event helpers on top of the ``taskapi.events`` logger."""

    def __init__(self, name: str = f"{APP_LOGGER}.events"):
        self._logger = logging.getLogger(name)

    def log(self, level: str, message: str, context: dict | None = None, **meta) -> None:
        extra = {"context": context or {}}
        extra.update({k: v for k, v in meta.items() if k in META_FIELDS and v is not None})
        self._logger.log(LEVELS[level], message, extra=extra)

    def debug(self, message: str, context: dict | None = None, **meta) -> None:
        self.log("DEBUG", message, context, **meta)

    def info(self, message: str, context: dict | None = None, **meta) -> None:
        self.log("INFO", message, context, **meta)

    def warn(self, message: str, context: dict | None = None, **meta) -> None:
        self.log("WARN", message, context, **meta)

    def error(self, message: str, context: dict | None = None, **meta) -> None:
        self.log("ERROR", message, context, **meta)

    # auth
    def auth_success(self, user_id: str, method: str, ip=None, user_agent=None):
        self.info(
            "Authentication successful",
            {"method": method, "userId": user_id},
            user_id=user_id, ip=ip, user_agent=user_agent,
        )

    def auth_failure(self, reason: str, ip=None, user_agent=None):
        self.warn("Authentication failed", {"reason": reason}, ip=ip, user_agent=user_agent)

    def auth_logout(self, user_id: str | None, ip=None, user_agent=None):
        self.info("User logged out", {"userId": user_id}, user_id=user_id, ip=ip, user_agent=user_agent)

    # api
    def api_request(self, method, path, user_id=None, ip=None, user_agent=None, request_id=None):
        self.info(
            "API request",
            {"method": method, "path": path},
            user_id=user_id, ip=ip, user_agent=user_agent, request_id=request_id,
        )

    def api_response(self, method, path, status_code, duration_ms, user_id=None, request_id=None):
        level = "ERROR" if status_code >= 400 else "WARN" if status_code >= 300 else "INFO"
        self.log(
            level,
            "API response",
            {"method": method, "path": path, "statusCode": status_code, "duration": f"{duration_ms}ms"},
            user_id=user_id, request_id=request_id,
        )

    # database
    def db_query(self, operation: str, table: str, user_id=None, duration_ms=None):
        context = {"operation": operation, "table": table}
        if duration_ms is not None:
            context["duration"] = f"{duration_ms}ms"
        self.debug("Database operation", context, user_id=user_id)

    def db_error(self, operation: str, table: str, error: str, user_id=None):
        self.error(
            "Database error",
            {"operation": operation, "table": table, "error": error},
            user_id=user_id,
        )

    # rate limiting
    def rate_limit_hit(self, identifier, limit, window, path=None, method=None, ip=None, user_agent=None):
        self.warn(
            "Rate limit exceeded",
            {
                "identifier": identifier,
                "limit": limit,
                "window": window,
                "path": path,
                "method": method,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            ip=ip, user_agent=user_agent,
        )

    # cache
    def cache_hit(self, key: str, user_id=None):
        self.debug("Cache hit", {"key": key}, user_id=user_id)

    def cache_miss(self, key: str, user_id=None):
        self.debug("Cache miss", {"key": key}, user_id=user_id)

    def cache_set(self, key: str, ttl: int, user_id=None):
        self.debug("Cache set", {"key": key, "ttl": ttl}, user_id=user_id)

    def cache_invalidation(self, key: str, reason: str, user_id=None):
        self.info("Cache invalidated", {"key": key, "reason": reason}, user_id=user_id)


events = EventLogger()
