# models.py - data model shared by the gateway, selector, reconciler and controller
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

AUTO_SELECT = "auto"
STATUS_SUCCESS = "success"


class Side(str, enum.Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1


@dataclass(frozen=True)
class Instrument:
    """
    Market metadata for one perpetual instrument.

    Balances reported by the gateway are raw units, i.e. human units scaled by
    10**decimals. Orders are submitted in human units rounded to `digits`.
    """
    product_id: str
    name: str
    decimals: int = 0
    digits: int = 3
    min_size: float = 0.0

    def to_human(self, raw: float) -> float:
        return raw / (10 ** self.decimals)

    def to_raw(self, human: float) -> float:
        return human * (10 ** self.decimals)

    def round_human(self, human: float) -> float:
        return round(human, self.digits)


@dataclass(frozen=True)
class Fill:
    product_id: str
    amount: float          # signed, raw units
    price: float
    timestamp: int         # ms
    post_balance: float    # raw base-asset balance after this fill


@dataclass(frozen=True)
class OrderIntent:
    product_id: str
    amount: float          # signed, human units
    reference_price: float
    limit_price: float
    expiration: int        # unix seconds
    nonce: int
    reduce_only: bool = False

    @property
    def is_buy(self) -> bool:
        return self.amount > 0


@dataclass
class OrderResult:
    status: str
    raw: Any = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


@dataclass
class CycleRecord:
    """One open/hold/close cycle, kept only long enough to be logged."""
    balance_before: float
    balance_after: Optional[float] = None
    product_id: Optional[str] = None
    side: Optional[Side] = None
    size: float = 0.0
    status: str = "idle"

    @property
    def delta(self) -> float:
        if self.balance_after is None:
            return 0.0
        return self.balance_after - self.balance_before

    @property
    def traded(self) -> bool:
        return self.status in ("open_failed", "closed", "close_failed")
