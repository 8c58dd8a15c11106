"""
API circuit breaker for the exchange gateway.

Counts failed gateway calls in a sliding window. Once tripped, the controller
stops opening new cycles until the cooldown has elapsed; reconciliation is not
affected because it has its own retry loop.
"""
from __future__ import annotations
import logging
import time
from collections import deque
from typing import Any, Callable, Dict, Optional

log = logging.getLogger("risk_controller")


class APICircuitBreaker:
    """Trips after `max_errors` failures within `window_seconds`."""

    def __init__(
        self,
        max_errors: int = 5,
        window_seconds: int = 300,
        cooldown_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.max_errors = max_errors
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.error_timestamps: deque = deque(maxlen=max(1, max_errors * 2))
        self.tripped_at: Optional[float] = None
        self.tripped_count = 0

    @classmethod
    def from_config(cls, cb_config: Optional[Dict[str, Any]]) -> Optional["APICircuitBreaker"]:
        cb_config = cb_config or {}
        if not cb_config.get("enabled", True):
            return None
        return cls(
            max_errors=int(cb_config.get("max_errors", 5)),
            window_seconds=int(cb_config.get("window_seconds", 300)),
            cooldown_seconds=int(cb_config.get("cooldown_seconds", 600)),
        )

    def record_error(self) -> None:
        self.error_timestamps.append(self.clock())

    def record_success(self) -> None:
        # successes never clear errors; only the window ages them out
        pass

    def _recent_errors(self, now: float) -> int:
        cutoff = now - self.window_seconds
        return sum(1 for ts in self.error_timestamps if ts >= cutoff)

    def is_tripped(self) -> bool:
        now = self.clock()

        if self.tripped_at is not None:
            if now - self.tripped_at >= self.cooldown_seconds:
                log.info("Circuit breaker cooldown expired. Resetting.")
                self.tripped_at = None
                self.error_timestamps.clear()
                return False
            return True

        recent = self._recent_errors(now)
        if recent >= self.max_errors:
            self.tripped_at = now
            self.tripped_count += 1
            log.error(
                f"API CIRCUIT BREAKER TRIPPED: {recent} gateway errors in {self.window_seconds}s. "
                f"New cycles paused for {self.cooldown_seconds}s."
            )
            return True
        return False

    def get_status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "tripped": self.is_tripped(),
            "recent_errors": self._recent_errors(now),
            "max_errors": self.max_errors,
            "tripped_count": self.tripped_count,
            "cooldown_remaining": max(0.0, self.cooldown_seconds - (now - self.tripped_at)) if self.tripped_at else 0.0,
        }
