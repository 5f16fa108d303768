"""Structured logging for threatmerge.

configure_logging() is called once by main.py; modules call
get_logger(__name__). Every line logged while a merge is running carries
that merge's merge_id (set_merge_id / clear_merge_id, see orchestrator.py).
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

merge_id_var: ContextVar[Optional[str]] = ContextVar("merge_id", default=None)


def add_merge_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add merge_id to the event while a merge is running."""
    merge_id = merge_id_var.get()
    if merge_id:
        event_dict["merge_id"] = merge_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines if True, coloured console output otherwise
    """
    processors: list[Processor] = [
        add_merge_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "threatmerge") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_merge_id(merge_id: str) -> None:
    merge_id_var.set(merge_id)


def clear_merge_id() -> None:
    merge_id_var.set(None)


class PerformanceLogger:
    """Logs how long a block took.

    Slower than ``warn_after_ms`` → WARNING, otherwise DEBUG. An exception is
    logged at ERROR and propagates.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        warn_after_ms: float = 5_000.0,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.warn_after_ms = warn_after_ms
        self._start = 0.0

    def __enter__(self) -> "PerformanceLogger":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        duration_ms = (time.perf_counter() - self._start) * 1000
        if exc_type is not None:
            self.logger.error(
                f"{self.operation}_failed",
                duration_ms=duration_ms,
                error=str(exc_val),
                error_type=exc_type.__name__,
            )
        elif duration_ms > self.warn_after_ms:
            self.logger.warning(f"{self.operation}_slow", duration_ms=duration_ms)
        else:
            self.logger.debug(f"{self.operation}_timed", duration_ms=duration_ms)


configure_logging()
