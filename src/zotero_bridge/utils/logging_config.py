"""
Logging support for Zotero Bridge.

The package only emits records through module loggers
(``logging.getLogger(__name__)``); handlers and levels belong to the host
application. This module holds the timing helper the backends use to log
query and request durations.
"""

import logging
import time
from typing import Any


class PerformanceMonitor:
    """
    Time a block and log how long it took.

    Nothing is logged unless the logger is enabled for ``log_level``
    (DEBUG by default). Extra keyword arguments are appended to the message.

    Example:
        >>> with PerformanceMonitor(logger, "local search", query="deep"):
        ...     rows = conn.execute(sql).fetchall()
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        log_level: int = logging.DEBUG,
        **details: Any,
    ) -> None:
        self.logger = logger
        self.operation = operation
        self.log_level = log_level
        self.details = details
        self.started: float | None = None
        self.elapsed: float | None = None

    def __enter__(self) -> "PerformanceMonitor":
        self.started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.started is None:
            return
        self.elapsed = time.perf_counter() - self.started
        if not self.logger.isEnabledFor(self.log_level):
            return

        outcome = "failed" if exc_type else "completed"
        message = f"{self.operation} {outcome} in {self.elapsed:.3f}s"
        if self.details:
            message += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        self.logger.log(self.log_level, message)
