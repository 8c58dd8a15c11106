# exchange.py - ccxt-backed ExchangeGateway for linear perpetual swaps
from __future__ import annotations
import logging
import math
import time
from typing import Any, Dict, Iterable, List, Optional

import ccxt
from ccxt.base.decimal_to_precision import TICK_SIZE
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import AppConfig
from .errors import ConfigurationError, TransientGatewayError
from .gateway import ExchangeGateway
from .models import STATUS_SUCCESS, Fill, Instrument, OrderIntent, OrderResult, Side
from .risk_controller import APICircuitBreaker

log = logging.getLogger("exchange")


def client_order_id(nonce: int, exchange_id: str) -> str:
    """Venue-accepted client order id for a nonce; hyperliquid takes a 128-bit hex cloid."""
    if exchange_id == "hyperliquid":
        return "0x" + format(nonce & ((1 << 128) - 1), "032x")
    return f"pc{nonce}"


def _precision_digits(step: Optional[float], precision_mode: int) -> int:
    """Number of decimal places implied by a ccxt amount precision."""
    if step is None:
        return 8
    step = float(step)
    if precision_mode != TICK_SIZE:
        return max(0, int(step))
    if step >= 1:
        return 0
    return max(0, int(round(-math.log10(step))))


class CcxtGateway(ExchangeGateway):
    """
    ccxt unified wrapper for one account on a perp exchange (hyperliquid, bybit, ...).

    Amounts are in contracts, which ccxt already reports in human units, so
    every Instrument built here has decimals=0.
    Reads go through tenacity on ccxt.NetworkError and surface as
    TransientGatewayError; submit_order never raises on exchange errors.
    """

    def __init__(self, cfg: AppConfig, dry: bool = False, client: Any = None):
        super().__init__()
        self.cfg = cfg.exchange
        self.instruments_cfg = cfg.instruments
        self.execution_cfg = cfg.execution
        self.dry = dry
        self.circuit_breaker = APICircuitBreaker.from_config(cfg.risk.api_circuit_breaker)
        self._account = cfg.credentials.wallet_address or f"{self.cfg.id}:default"
        self._instruments: Optional[Dict[str, Instrument]] = None

        if client is None:
            klass = getattr(ccxt, self.cfg.id, None)
            if klass is None:
                raise ConfigurationError(f"Unknown ccxt exchange id: {self.cfg.id!r}")
            creds = cfg.credentials.ccxt_params()
            if not creds:
                log.warning("API credentials missing. Private endpoints will fail.")
            client = klass({
                **creds,
                "enableRateLimit": True,
                "timeout": int(self.cfg.timeout_ms),
                "options": {"defaultType": "swap"},
            })
            if self.cfg.testnet and hasattr(client, "set_sandbox_mode"):
                client.set_sandbox_mode(True)
        self.x = client

        log.info(
            "CCXT init: id=%s, testnet=%s, quote=%s, leverage=%s, dry=%s",
            getattr(self.x, "id", self.cfg.id),
            self.cfg.testnet,
            self.cfg.quote,
            self.cfg.leverage,
            self.dry,
        )

    # ------------------------ plumbing ------------------------

    @property
    def account_id(self) -> str:
        return self._account

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(ccxt.NetworkError),
        reraise=True,
    )
    def _with_retry(self, fn, *args, **kwargs):
        return fn(*args, **kwargs)

    def _record(self, ok: bool) -> None:
        if not self.circuit_breaker:
            return
        if ok:
            self.circuit_breaker.record_success()
        else:
            self.circuit_breaker.record_error()

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            out = self._with_retry(fn, *args, **kwargs)
        except ccxt.BaseError as e:
            self._record(False)
            raise TransientGatewayError(f"{what} failed: {e}") from e
        self._record(True)
        return out

    def is_degraded(self) -> bool:
        return bool(self.circuit_breaker and self.circuit_breaker.is_tripped())

    def degraded_status(self) -> Dict[str, Any]:
        return self.circuit_breaker.get_status() if self.circuit_breaker else {}

    # ------------------------ markets ------------------------

    def _is_cycle_market(self, m: dict) -> bool:
        if m.get("active") is False:
            return False
        if m.get("swap") is not True:
            return False
        if m.get("linear") is False:
            return False
        return m.get("settle") in (self.cfg.quote, None)

    def _instrument_from_market(self, m: dict) -> Instrument:
        mode = getattr(self.x, "precisionMode", TICK_SIZE)
        step = (m.get("precision") or {}).get("amount")
        min_amt = ((m.get("limits") or {}).get("amount") or {}).get("min")
        base = m.get("base") or m["symbol"].split("/")[0]
        return Instrument(
            product_id=m["symbol"],
            name=f"{base}-PERP",
            decimals=0,
            digits=_precision_digits(step, mode),
            min_size=float(min_amt or 0.0),
        )

    def list_instruments(self) -> Dict[str, Instrument]:
        # market metadata is immutable for the lifetime of a run
        if self._instruments is None:
            markets = self._call("load_markets", self.x.load_markets) or {}
            self._instruments = {
                sym: self._instrument_from_market(m)
                for sym, m in markets.items()
                if self._is_cycle_market(m)
            }
            log.info(f"Loaded {len(self._instruments)} {self.cfg.quote}-settled perp instruments")
        return self._instruments

    def prepare(self, instrument_ids: Iterable[str]) -> None:
        if self.dry or not hasattr(self.x, "set_leverage"):
            return
        for sym in instrument_ids:
            try:
                self.x.set_leverage(int(self.cfg.leverage), sym)
            except ccxt.BaseError as e:
                log.debug(f"set_leverage({sym},{self.cfg.leverage}) failed: {e}")

    # ------------------------ account / prices ------------------------

    def _free_collateral(self) -> float:
        bal = self._call("fetch_balance", self.x.fetch_balance) or {}
        free = (bal.get("free") or {}).get(self.cfg.quote)
        if free is None:
            free = (bal.get(self.cfg.quote) or {}).get("free")
        return float(free or 0.0)

    def get_account_health(self) -> float:
        return self._free_collateral()

    def get_mark_price(self, instrument_id: str) -> float:
        t = self._call("fetch_ticker", self.x.fetch_ticker, instrument_id) or {}
        px = t.get("markPrice") or t.get("indexPrice") or t.get("last") or t.get("close")
        if not px:
            raise TransientGatewayError(f"no price in ticker for {instrument_id}")
        try:
            return float(self.x.price_to_precision(instrument_id, px))
        except ccxt.BaseError as e:
            raise TransientGatewayError(f"price_to_precision({instrument_id}) failed: {e}") from e

    def get_max_order_size(self, instrument_id: str, side: Side, adjusted_price: float) -> float:
        """
        Collateral-limited size at `adjusted_price`. Linear perps margin both
        directions the same way, so `side` only matters through the price the
        caller already adjusted for it.
        """
        if adjusted_price <= 0:
            return 0.0
        free = max(0.0, self._free_collateral())
        try:
            market = self.x.market(instrument_id)
        except ccxt.BaseError as e:
            raise TransientGatewayError(f"market({instrument_id}) failed: {e}") from e
        contract_size = float(market.get("contractSize") or 1.0)
        size = free * float(self.cfg.leverage) / (adjusted_price * contract_size)
        cap = ((market.get("limits") or {}).get("amount") or {}).get("max")
        if cap:
            size = min(size, float(cap))
        if size <= 0:
            return 0.0
        try:
            return float(self.x.amount_to_precision(instrument_id, size))
        except ccxt.InvalidOrder:
            # below the smallest representable amount
            return 0.0
        except ccxt.BaseError as e:
            raise TransientGatewayError(f"amount_to_precision({instrument_id}) failed: {e}") from e

    def get_reward_coefficients(self, account_id: str) -> Dict[str, float]:
        coeffs = {k: float(v) for k, v in self.instruments_cfg.reward_coefficients.items()}
        if not coeffs:
            raise TransientGatewayError("no reward coefficients configured (instruments.reward_coefficients)")
        return coeffs

    # ------------------------ fills ------------------------

    def _net_position(self, positions: List[dict], instrument_id: str) -> float:
        net = 0.0
        for p in positions or []:
            if p.get("symbol") != instrument_id:
                continue
            qty = float(p.get("contracts") or 0.0)
            side = (p.get("side") or "").lower()
            if side == "long":
                net += abs(qty)
            elif side == "short":
                net -= abs(qty)
            else:
                net += qty
        return net

    def get_recent_fills(self, account_id: str, instrument_id: str, limit: int) -> List[Fill]:
        trades = self._call("fetch_my_trades", self.x.fetch_my_trades, instrument_id, None, limit) or []
        positions = self._call("fetch_positions", self.x.fetch_positions, [instrument_id]) or []
        net = self._net_position(positions, instrument_id)

        trades = sorted(trades, key=lambda t: t.get("timestamp") or 0, reverse=True)[:limit]
        if not trades:
            if net != 0.0:
                # position older than the trade history the exchange keeps
                log.warning(f"{instrument_id}: open position {net} but no recent trades")
                return [Fill(instrument_id, net, 0.0, int(time.time() * 1000), net)]
            return []

        # walk back from the live position to recover each fill's post-trade balance
        fills: List[Fill] = []
        balance = net
        for t in trades:
            signed = float(t.get("amount") or 0.0) * (1.0 if (t.get("side") or "").lower() == "buy" else -1.0)
            fills.append(Fill(
                product_id=instrument_id,
                amount=signed,
                price=float(t.get("price") or 0.0),
                timestamp=int(t.get("timestamp") or 0),
                post_balance=balance,
            ))
            balance -= signed
        return fills

    # ------------------------ trading ------------------------

    def submit_order(self, intent: OrderIntent) -> OrderResult:
        side = "buy" if intent.is_buy else "sell"
        if self.dry:
            log.info(
                f"[DRY] {side} {abs(intent.amount)} {intent.product_id} @ {intent.limit_price:.6g} "
                f"(nonce={intent.nonce}, reduce_only={intent.reduce_only})"
            )
            return OrderResult(STATUS_SUCCESS, {"dry": True, "nonce": intent.nonce})

        if intent.expiration <= time.time():
            return OrderResult("expired", f"intent expired at {intent.expiration}")

        params: Dict[str, Any] = {
            "timeInForce": self.execution_cfg.time_in_force,
            "clientOrderId": client_order_id(intent.nonce, getattr(self.x, "id", self.cfg.id)),
        }
        if intent.reduce_only:
            params["reduceOnly"] = True
        try:
            amount = float(self.x.amount_to_precision(intent.product_id, abs(intent.amount)))
            price = float(self.x.price_to_precision(intent.product_id, intent.limit_price))
            order = self.x.create_order(intent.product_id, "limit", side, amount, price, params)
        except ccxt.BaseError as e:
            self._record(False)
            log.warning(f"create_order {side} {intent.product_id} failed: {e}")
            return OrderResult("failure", str(e))
        self._record(True)

        if not order:
            return OrderResult("failure", "empty response")
        status = (order.get("status") or "").lower()
        if status == "rejected":
            return OrderResult("rejected", order)
        filled = order.get("filled")
        if status in ("canceled", "expired") and filled is not None and float(filled) == 0.0:
            return OrderResult("unfilled", order)
        return OrderResult(STATUS_SUCCESS, order)

    # ------------------------ cleanup ------------------------

    def close(self):
        try:
            if hasattr(self.x, "close"):
                self.x.close()
        except Exception as e:
            log.debug(f"exchange close failed: {e}")
