"""
Exchange gateway boundary.

The engine never talks to an exchange directly: it calls an ExchangeGateway and
treats the account held there as the only source of truth. There is no local
position cache, so every method must return live state.

Implementations raise TransientGatewayError for any failure of a read; order
submission reports failures through OrderResult.status instead of raising.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from .models import Fill, Instrument, OrderIntent, OrderResult, Side


class ExchangeGateway(ABC):

    def __init__(self):
        self._nonce_lock = threading.Lock()
        self._last_nonce = 0

    @property
    @abstractmethod
    def account_id(self) -> str:
        ...

    @abstractmethod
    def get_account_health(self) -> float:
        """Balance-equivalent health metric; the engine stops when it is <= 0."""

    @abstractmethod
    def get_mark_price(self, instrument_id: str) -> float:
        """Mark/index price already rounded to the instrument's price precision."""

    @abstractmethod
    def get_max_order_size(self, instrument_id: str, side: Side, adjusted_price: float) -> float:
        """Largest order (raw units, unsigned) the account may place at `adjusted_price`."""

    @abstractmethod
    def list_instruments(self) -> Dict[str, Instrument]:
        ...

    def get_instrument(self, instrument_id: str) -> Instrument:
        instruments = self.list_instruments()
        if instrument_id not in instruments:
            raise KeyError(f"unknown instrument {instrument_id!r}")
        return instruments[instrument_id]

    @abstractmethod
    def get_reward_coefficients(self, account_id: str) -> Dict[str, float]:
        ...

    @abstractmethod
    def get_recent_fills(self, account_id: str, instrument_id: str, limit: int) -> List[Fill]:
        """Most recent first; each fill carries the post-trade base balance."""

    @abstractmethod
    def submit_order(self, intent: OrderIntent) -> OrderResult:
        ...

    def next_nonce(self) -> int:
        # ms timestamp in the high bits, strictly increasing per process
        with self._nonce_lock:
            candidate = int(time.time() * 1000) << 20
            self._last_nonce = max(candidate, self._last_nonce + 1)
            return self._last_nonce

    def prepare(self, instrument_ids: Iterable[str]) -> None:
        """One-time per-instrument setup (leverage etc.). Default: nothing."""

    def is_degraded(self) -> bool:
        """True while the gateway wants callers to back off (e.g. circuit breaker open)."""
        return False

    def degraded_status(self) -> Dict[str, Any]:
        """Details for the back-off log line and alert; empty when there is nothing to report."""
        return {}

    def close(self) -> None:
        pass
