# timing.py - random draws and interruptible pauses
from __future__ import annotations

import logging
import random
import threading
from typing import Optional, Sequence, TypeVar

from .errors import ShutdownRequested
from .models import Side

log = logging.getLogger("timing")

T = TypeVar("T")


class Randomizer:
    """Every random decision of the engine goes through here so tests can script it."""

    def __init__(self, seed: Optional[int] = None):
        self.rng = random.Random(seed)

    def uniform(self, lo: float, hi: float) -> float:
        if lo == hi:
            return float(lo)
        return self.rng.uniform(lo, hi)

    def pick_one(self, items: Sequence[T]) -> T:
        if not items:
            raise ValueError("pick_one: empty sequence")
        return self.rng.choice(list(items))

    def pick_weighted(self, items: Sequence[T], weights: Sequence[float]) -> T:
        if not items:
            raise ValueError("pick_weighted: empty sequence")
        return self.rng.choices(list(items), weights=list(weights), k=1)[0]

    def pick_side(self) -> Side:
        return Side.LONG if self.rng.random() >= 0.5 else Side.SHORT


class Pauser:
    """
    Sleeps that a shutdown request can cut short.

    All waiting happens on one threading.Event; `request_stop()` (called from a
    signal handler) sets it, which wakes any pause and makes it raise
    ShutdownRequested.
    """

    def __init__(self, randomizer: Randomizer, stop_event: Optional[threading.Event] = None):
        self.randomizer = randomizer
        self.stop_event = stop_event or threading.Event()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self) -> None:
        self.stop_event.set()

    def check(self) -> None:
        if self.stop_event.is_set():
            raise ShutdownRequested("shutdown requested")

    def _wait(self, seconds: float) -> bool:
        """Returns True if woken by a stop request."""
        return self.stop_event.wait(max(0.0, seconds))

    def sleep(self, seconds: float) -> float:
        self.check()
        if self._wait(seconds):
            raise ShutdownRequested(f"shutdown requested during {seconds:.1f}s pause")
        return seconds

    def pause(self, min_seconds: float, max_seconds: float) -> float:
        seconds = self.randomizer.uniform(min_seconds, max_seconds)
        log.debug(f"Pausing {seconds:.1f}s")
        return self.sleep(seconds)
