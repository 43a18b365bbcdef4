"""Small timing helper for logging how long operations take."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Timer:
    """Measure an operation and log its duration in milliseconds."""

    def __init__(
        self,
        operation: str,
        log: Optional[logging.Logger] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.operation = operation
        self.log = log or logger
        self.context = dict(context or {})
        self.started = time.monotonic()
        self._checkpoints: list[tuple[str, float]] = []
        self._ended = False

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000.0

    def checkpoint(self, name: str) -> float:
        """Record an intermediate mark and return the elapsed milliseconds."""
        elapsed = self.elapsed_ms()
        self._checkpoints.append((name, elapsed))
        self.log.debug("%s: checkpoint %s at %.0fms", self.operation, name, elapsed)
        return elapsed

    def end(self, **extra: Any) -> float:
        elapsed = self.elapsed_ms()
        if self._ended:
            return elapsed
        self._ended = True
        details = {**self.context, **extra}
        if self._checkpoints:
            details["checkpoints"] = {name: round(ms) for name, ms in self._checkpoints}
        self.log.info("%s completed in %.0fms %s", self.operation, elapsed, details or "")
        return elapsed
