# Shared fakes: an in-memory exchange gateway, scripted random draws and a pauser that never sleeps
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional

import pytest

from perp_cycler.config import AppConfig, InstrumentsCfg
from perp_cycler.errors import TransientGatewayError
from perp_cycler.gateway import ExchangeGateway
from perp_cycler.models import STATUS_SUCCESS, Fill, Instrument, OrderIntent, OrderResult, Side
from perp_cycler.timing import Pauser, Randomizer


class FakeGateway(ExchangeGateway):
    """
    Account simulator. Positions live in `positions` (raw units); a successful
    order moves the position by its amount. `statuses` scripts the outcome of
    successive submissions (success once exhausted).
    """

    def __init__(
        self,
        instruments: Iterable[Instrument],
        prices: Optional[Dict[str, float]] = None,
        max_sizes: Optional[Dict[str, float]] = None,
        healths: Optional[List[float]] = None,
        coefficients: Optional[Dict[str, float]] = None,
    ):
        super().__init__()
        self.instruments = {i.product_id: i for i in instruments}
        self.prices = prices or {pid: 100.0 for pid in self.instruments}
        self.max_sizes = max_sizes or {pid: 1.0 for pid in self.instruments}
        self.healths = deque(healths if healths is not None else [100.0])
        self.coefficients = coefficients or {}
        self.positions: Dict[str, float] = {pid: 0.0 for pid in self.instruments}
        self.traded: Dict[str, bool] = {pid: False for pid in self.instruments}
        self.statuses: deque = deque()
        self.fill_errors = 0
        self.price_errors = 0
        self.orders: List[OrderIntent] = []
        self.max_size_calls: List[tuple] = []
        self.prepared: List[str] = []
        self.markets_error: Optional[Exception] = None
        self.degraded: Optional[dict] = None

    @property
    def account_id(self) -> str:
        return "0xtest"

    def set_residual(self, product_id: str, raw: float) -> None:
        self.positions[product_id] = raw
        self.traded[product_id] = True

    def get_account_health(self) -> float:
        # health script runs out -> account is empty
        return self.healths.popleft() if self.healths else 0.0

    def get_mark_price(self, instrument_id: str) -> float:
        if self.price_errors:
            self.price_errors -= 1
            raise TransientGatewayError("price feed down")
        return self.prices[instrument_id]

    def get_max_order_size(self, instrument_id: str, side: Side, adjusted_price: float) -> float:
        self.max_size_calls.append((instrument_id, side, adjusted_price))
        return self.max_sizes[instrument_id]

    def list_instruments(self) -> Dict[str, Instrument]:
        if self.markets_error:
            raise self.markets_error
        return self.instruments

    def get_reward_coefficients(self, account_id: str) -> Dict[str, float]:
        return dict(self.coefficients)

    def get_recent_fills(self, account_id: str, instrument_id: str, limit: int) -> List[Fill]:
        if self.fill_errors:
            self.fill_errors -= 1
            raise TransientGatewayError("indexer unavailable")
        if not self.traded[instrument_id]:
            return []
        return [Fill(instrument_id, 0.0, self.prices[instrument_id], 0, self.positions[instrument_id])]

    def submit_order(self, intent: OrderIntent) -> OrderResult:
        self.orders.append(intent)
        status = self.statuses.popleft() if self.statuses else STATUS_SUCCESS
        if status == STATUS_SUCCESS:
            inst = self.instruments[intent.product_id]
            self.positions[intent.product_id] += inst.to_raw(intent.amount)
            self.traded[intent.product_id] = True
        return OrderResult(status, {"nonce": intent.nonce})

    def prepare(self, instrument_ids) -> None:
        self.prepared.extend(instrument_ids)

    def is_degraded(self) -> bool:
        return self.degraded is not None

    def degraded_status(self) -> dict:
        return dict(self.degraded or {})


class RecordingNotifier:
    def __init__(self):
        self.messages: List[str] = []
        self.embeds: List[dict] = []

    def send_message(self, content: str) -> bool:
        self.messages.append(content)
        return True

    def send_embed(self, title, description="", fields=None, color=None) -> bool:
        self.embeds.append({"title": title, "description": description, "fields": fields, "color": color})
        return True


class ScriptedRandomizer(Randomizer):
    """Returns queued values; falls back to the lower bound / first item / long."""

    def __init__(self, uniforms=(), sides=(), picks=()):
        super().__init__(seed=0)
        self.uniforms = deque(uniforms)
        self.sides = deque(sides)
        self.picks = deque(picks)

    def uniform(self, lo, hi):
        return float(self.uniforms.popleft()) if self.uniforms else float(lo)

    def pick_one(self, items):
        if not items:
            raise ValueError("pick_one: empty sequence")
        return self.picks.popleft() if self.picks else list(items)[0]

    def pick_side(self):
        return self.sides.popleft() if self.sides else Side.LONG


class RecordingPauser(Pauser):
    """Records every wait instead of sleeping; can simulate a shutdown on the n-th wait."""

    def __init__(self, randomizer=None, stop_on_wait: Optional[int] = None):
        super().__init__(randomizer or ScriptedRandomizer())
        self.waits: List[float] = []
        self.stop_on_wait = stop_on_wait

    def _wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        if self.stop_on_wait is not None and len(self.waits) >= self.stop_on_wait:
            self.request_stop()
        return self.stop_event.is_set()


BTC = Instrument("BTC", "BTC-PERP", decimals=0, digits=3, min_size=0.001)
ETH = Instrument("ETH", "ETH-PERP", decimals=0, digits=2, min_size=0.01)


def make_config(tracked=("BTC",), **instrument_kwargs) -> AppConfig:
    return AppConfig(instruments=InstrumentsCfg(tracked=list(tracked), **instrument_kwargs))


@pytest.fixture
def gateway():
    return FakeGateway([BTC, ETH])


@pytest.fixture
def pauser():
    return RecordingPauser()
