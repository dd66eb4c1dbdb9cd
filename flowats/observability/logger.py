"""Structured, context-carrying loggers.

Every call produces exactly one JSON record (see ``flowats.logging_config``).
A ``StructuredLogger`` carries an immutable context mapping that is merged
into each record; call-specific fields are merged after it and win on key
collision. ``RequestLogger`` pins a ``requestId`` and adds the request-scoped
helpers used by the HTTP entry point, and ``Timer`` measures an operation.

Logging never raises into callers: threshold checks happen before any record
is built, and formatting or stream failures are handled by the handlers.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from flowats.logging_config import LOGGER_NAME, resolve_level
from flowats.utils.time import Clock, system_clock

FAST_THRESHOLD_MS = 1000
SLOW_THRESHOLD_MS = 5000


class StructuredLogger:
    def __init__(
        self,
        name: str = LOGGER_NAME,
        context: Optional[dict[str, Any]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.name = name
        self.clock = clock or system_clock
        self._logger = logging.getLogger(name)
        self._context: dict[str, Any] = dict(context or {})

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a new logger whose context extends this one."""
        return StructuredLogger(self.name, {**self._context, **fields}, self.clock)

    def is_enabled(self, level: str | int) -> bool:
        return self._logger.isEnabledFor(resolve_level(level))

    def log(self, level: str | int, message: str, /, **fields: Any) -> None:
        levelno = resolve_level(level)
        if not self._logger.isEnabledFor(levelno):
            return
        exc_info = fields.pop("exc_info", None)
        self._logger.log(
            levelno,
            message,
            exc_info=exc_info,
            extra={"context": self._context, "fields": fields},
        )

    def debug(self, message: str, /, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, /, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warn(self, message: str, /, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    warning = warn

    def error(self, message: str, /, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)


class RequestLogger(StructuredLogger):
    """Logger bound to one request; ``set_context`` extends later records only."""

    def __init__(
        self,
        request_id: str,
        context: Optional[dict[str, Any]] = None,
        name: str = LOGGER_NAME,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(name, {"requestId": request_id, **(context or {})}, clock)
        self.request_id = request_id

    def set_context(self, **fields: Any) -> None:
        fields.pop("requestId", None)
        self._context = {**self._context, **fields}

    # Helpers merge their own keys over caller extras so a colliding extra
    # never turns into a duplicate keyword argument.

    def request_start(self, method: str, path: str, /, **fields: Any) -> None:
        self.info("request_start", **{**fields, "method": method, "path": path})

    def request_end(self, method: str, path: str, status: int, duration_ms: float, /, **fields: Any) -> None:
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.log(
            level,
            "request_end",
            **{
                **fields,
                "method": method,
                "path": path,
                "status": status,
                "durationMs": round(duration_ms, 2),
                "statusClass": f"{status // 100}xx",
            },
        )

    def auth_event(self, event: str, user_id: Optional[str] = None, success: bool = True, **fields: Any) -> None:
        self.log(
            logging.INFO if success else logging.WARNING,
            f"auth_{event}",
            **{**fields, "userId": user_id, "success": success},
        )

    def db_operation(
        self,
        operation: str,
        table: str,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        **fields: Any,
    ) -> None:
        self.log(
            logging.ERROR if error else logging.DEBUG,
            "db_operation",
            **{
                **fields,
                "operation": operation,
                "table": table,
                "durationMs": round(duration_ms, 2) if duration_ms is not None else None,
                "error": error,
            },
        )

    def external_call(
        self,
        service: str,
        operation: str,
        duration_ms: Optional[float] = None,
        status: Optional[int] = None,
        error: Optional[str] = None,
        **fields: Any,
    ) -> None:
        failed = error is not None or (status is not None and status >= 400)
        self.log(
            logging.WARNING if failed else logging.INFO,
            "external_call",
            **{
                **fields,
                "service": service,
                "operation": operation,
                "durationMs": round(duration_ms, 2) if duration_ms is not None else None,
                "status": status,
                "error": error,
            },
        )

    def timer(self, operation: str) -> "Timer":
        return Timer(self, operation)


def classify_performance(elapsed_ms: float) -> str:
    if elapsed_ms < FAST_THRESHOLD_MS:
        return "fast"
    if elapsed_ms < SLOW_THRESHOLD_MS:
        return "normal"
    return "slow"


class Timer:
    """Measures one operation from construction; ``end`` returns the elapsed ms."""

    def __init__(self, logger: StructuredLogger, operation: str, clock: Optional[Clock] = None) -> None:
        self._logger = logger
        self.operation = operation
        self._clock = clock or logger.clock
        self._start = self._clock.monotonic_ms()

    def elapsed_ms(self) -> float:
        return max(0.0, self._clock.monotonic_ms() - self._start)

    def checkpoint(self, label: str, /, **fields: Any) -> float:
        elapsed = self.elapsed_ms()
        self._logger.debug(
            "timer_checkpoint",
            **{**fields, "operation": self.operation, "checkpoint": label, "elapsedMs": round(elapsed, 2)},
        )
        return elapsed

    def end(self, **fields: Any) -> float:
        elapsed = self.elapsed_ms()
        self._logger.info(
            "timer_end",
            **{
                **fields,
                "operation": self.operation,
                "durationMs": round(elapsed, 2),
                "performance": classify_performance(elapsed),
            },
        )
        return elapsed


def get_logger(name: str = LOGGER_NAME, **context: Any) -> StructuredLogger:
    return StructuredLogger(name, context)


def create_request_logger(
    request_id: Optional[str] = None,
    clock: Optional[Clock] = None,
    **context: Any,
) -> RequestLogger:
    return RequestLogger(request_id or str(uuid.uuid4()), context, clock=clock)


_config_log = get_logger(f"{LOGGER_NAME}.config")


def log_config_event(status: str, variable: str, /, **fields: Any) -> None:
    """Startup configuration event: ``missing`` and ``invalid`` are errors/warnings."""
    level = {"missing": logging.ERROR, "invalid": logging.WARNING}.get(status, logging.INFO)
    _config_log.log(level, "config", **{**fields, "status": status, "variable": variable})
