# selector.py - instrument choice and randomized order sizing
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import InstrumentsCfg, RangeCfg
from .errors import TransientGatewayError
from .gateway import ExchangeGateway
from .models import AUTO_SELECT, Side
from .orders import DEFAULT_SLIPPAGE, slippage_price
from .timing import Randomizer

log = logging.getLogger("selector")


@dataclass(frozen=True)
class SizeQuote:
    raw_amount: float   # signed
    min_size: float
    pct: float          # fraction of max_size, 0..1
    max_size: float

    @property
    def below_minimum(self) -> bool:
        return abs(self.raw_amount) < abs(self.min_size)


def is_auto(tracked: List[str]) -> bool:
    return len(tracked) == 1 and tracked[0] == AUTO_SELECT


def best_by_coefficient(coefficients: Dict[str, float]) -> str:
    """Highest coefficient wins; equal coefficients keep their original order."""
    ranked = sorted(coefficients.items(), key=lambda kv: kv[1], reverse=True)
    return ranked[0][0]


class InstrumentSelector:

    def __init__(
        self,
        gateway: ExchangeGateway,
        randomizer: Randomizer,
        instruments_cfg: Optional[InstrumentsCfg] = None,
        slippage: float = DEFAULT_SLIPPAGE,
    ):
        self.gateway = gateway
        self.randomizer = randomizer
        self.cfg = instruments_cfg or InstrumentsCfg()
        self.slippage = slippage

    def select_instrument(self, tracked: List[str]) -> str:
        if is_auto(tracked):
            return self._best_pick()
        if not tracked:
            raise ValueError("tracked instrument set is empty")
        if self.cfg.weights:
            weights = [float(self.cfg.weights.get(i, 0.0)) for i in tracked]
            return self.randomizer.pick_weighted(tracked, weights)
        return self.randomizer.pick_one(tracked)

    def _best_pick(self) -> str:
        coeffs = self.gateway.get_reward_coefficients(self.gateway.account_id)
        log.info("Reward ratio: " + ", ".join(f"{k} = {v}" for k, v in coeffs.items()))
        if self.cfg.universe:
            coeffs = {k: v for k, v in coeffs.items() if k in self.cfg.universe}
        if not coeffs:
            raise TransientGatewayError("no reward coefficients for any candidate instrument")
        return best_by_coefficient(coeffs)

    def compute_order_size(
        self,
        instrument_id: str,
        side: Side,
        reference_price: float,
        percent_range: RangeCfg,
    ) -> SizeQuote:
        adjusted = slippage_price(reference_price, side is Side.LONG, self.slippage)
        max_size = float(self.gateway.get_max_order_size(instrument_id, side, adjusted))
        pct = self.randomizer.uniform(percent_range.lo, percent_range.hi) / 100.0
        raw_amount = max_size * pct * side.sign
        min_size = self.gateway.get_instrument(instrument_id).min_size
        return SizeQuote(raw_amount=raw_amount, min_size=min_size, pct=pct, max_size=max_size)
