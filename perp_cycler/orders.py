# orders.py - slippage pricing and order-intent construction
from __future__ import annotations

import time
from typing import Optional

from .gateway import ExchangeGateway
from .models import OrderIntent

DEFAULT_SLIPPAGE = 0.005


def slippage_price(price: float, is_buy: bool, slippage: float = DEFAULT_SLIPPAGE) -> float:
    """Move the reference price against ourselves: up for buys, down for sells."""
    multiplier = 1.0 + slippage if is_buy else 1.0 - slippage
    return price * multiplier


def build_intent(
    gateway: ExchangeGateway,
    product_id: str,
    amount: float,
    price: float,
    *,
    slippage: float = DEFAULT_SLIPPAGE,
    ttl_sec: int = 60,
    reduce_only: bool = False,
    now: Optional[float] = None,
) -> OrderIntent:
    """
    Fresh intent for one placement attempt. Never reuse the result for a retry:
    each attempt needs its own nonce and expiration.
    """
    if amount == 0:
        raise ValueError("order amount must be non-zero")
    issued = time.time() if now is None else now
    return OrderIntent(
        product_id=product_id,
        amount=amount,
        reference_price=price,
        limit_price=slippage_price(price, amount > 0, slippage),
        expiration=int(issued) + int(ttl_sec),
        nonce=gateway.next_nonce(),
        reduce_only=reduce_only,
    )
