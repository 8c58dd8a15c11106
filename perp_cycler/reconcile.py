# reconcile.py - detect and force-close residual positions left by failed closes
from __future__ import annotations
import logging
from typing import Iterable, Optional

from .config import ReconcileCfg
from .errors import TransientGatewayError, UnsafeResidualPositionError
from .gateway import ExchangeGateway
from .models import OrderResult
from .notifications.discord_notifier import DiscordNotifier
from .orders import DEFAULT_SLIPPAGE, build_intent
from .timing import Pauser

log = logging.getLogger("reconcile")


class ReconciliationEngine:
    """
    Global safety gate of the engine.

    `reconcile()` only returns once the gateway reports a zero post-trade balance
    for the instrument. Failed force-closes are retried after a fixed cooldown,
    forever by default; `max_attempts > 0` turns that into bounded retries that
    end in UnsafeResidualPositionError.

    Callers must not run two reconciliations for the same instrument at once;
    the controller guarantees this by running everything sequentially.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        pauser: Pauser,
        cfg: Optional[ReconcileCfg] = None,
        slippage: float = DEFAULT_SLIPPAGE,
        order_ttl_sec: int = 60,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.gateway = gateway
        self.pauser = pauser
        self.cfg = cfg or ReconcileCfg()
        self.slippage = slippage
        self.order_ttl_sec = order_ttl_sec
        self.notifier = notifier

    def residual(self, instrument_id: str) -> float:
        """Raw base balance after the most recent fill (0.0 when there is no history)."""
        fills = self.gateway.get_recent_fills(self.gateway.account_id, instrument_id, self.cfg.fills_lookback)
        if not fills:
            return 0.0
        return float(fills[0].post_balance)

    def _force_close(self, instrument_id: str, residual: float) -> OrderResult:
        instrument = self.gateway.get_instrument(instrument_id)
        amount = -instrument.to_human(residual)
        price = self.gateway.get_mark_price(instrument_id)
        self.pauser.check()
        intent = build_intent(
            self.gateway,
            instrument_id,
            amount,
            price,
            slippage=self.slippage,
            ttl_sec=self.order_ttl_sec,
            reduce_only=True,
        )
        result = self.gateway.submit_order(intent)
        log.info(f"Force close {instrument.name} {amount:+} [price: {price}]: {result.status}")
        if not result.ok:
            log.warning(f"Force close {instrument.name} rejected: {result.raw}")
        return result

    def _escalate(self, instrument_id: str, residual: float, attempts: int) -> None:
        log.critical(
            f"{instrument_id}: residual {residual} still open after {attempts} force-close attempts; stopping"
        )
        if self.notifier:
            self.notifier.send_embed(
                title="Residual position could not be closed",
                description=f"{instrument_id}: {residual} after {attempts} attempts. Manual action required.",
                color=DiscordNotifier.COLOR_RED,
            )
        raise UnsafeResidualPositionError(instrument_id, residual, attempts)

    def reconcile(self, instrument_id: str) -> int:
        """Returns the number of close orders submitted (0 when nothing was open)."""
        submitted = 0
        failed = 0
        cooldown = float(self.cfg.retry_cooldown_sec)

        while True:
            self.pauser.check()
            try:
                residual = self.residual(instrument_id)
            except TransientGatewayError as e:
                log.warning(f"{instrument_id}: fill history unavailable ({e}); retrying in {cooldown:.0f}s")
                self.pauser.sleep(cooldown)
                continue

            if residual == 0.0:
                if submitted:
                    log.info(f"{instrument_id}: residual position closed after {submitted} order(s)")
                return submitted

            log.warning(f"{instrument_id}: residual position {residual} found, need to force close")
            try:
                result = self._force_close(instrument_id, residual)
                submitted += 1
            except TransientGatewayError as e:
                log.warning(f"{instrument_id}: force close could not be placed: {e}")
                result = OrderResult("failure", str(e))

            if result.ok:
                if self.notifier:
                    self.notifier.send_message(f"Force-closed residual {residual} on {instrument_id}")
                self.pauser.sleep(float(self.cfg.settle_delay_sec))
                continue

            failed += 1
            if self.cfg.max_attempts and failed >= self.cfg.max_attempts:
                self._escalate(instrument_id, residual, failed)
            self.pauser.sleep(cooldown)

    def reconcile_all(self, instrument_ids: Iterable[str]) -> int:
        return sum(self.reconcile(i) for i in instrument_ids)
