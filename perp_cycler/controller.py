# controller.py - balance-gated open/hold/close loop
from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional

from .config import AppConfig
from .errors import ConfigurationError, ShutdownRequested, TransientGatewayError
from .gateway import ExchangeGateway
from .models import CycleRecord, Instrument, OrderIntent
from .notifications.discord_notifier import DiscordNotifier
from .orders import build_intent
from .reconcile import ReconciliationEngine
from .selector import InstrumentSelector
from .timing import Pauser, Randomizer
from .utils import utcnow, write_heartbeat

log = logging.getLogger("controller")


class CycleController:
    """
    Runs one cycle at a time:

        Idle -> SelectInstrument -> PriceOpen -> SizeCheck -> {Skip | Open}
             -> Hold -> PriceClose -> Close -> Idle

    The loop ends when account health drops to zero or on shutdown. A failed
    open is not retried; a failed close is left to the reconciliation pass that
    follows every cycle. The controller keeps no position state of its own.
    """

    def __init__(
        self,
        cfg: AppConfig,
        gateway: ExchangeGateway,
        randomizer: Optional[Randomizer] = None,
        pauser: Optional[Pauser] = None,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.cfg = cfg
        self.gateway = gateway
        self.randomizer = randomizer or Randomizer()
        self.pauser = pauser or Pauser(self.randomizer)
        self.notifier = notifier
        self.selector = InstrumentSelector(gateway, self.randomizer, cfg.instruments, cfg.execution.slippage)
        self.reconciler = ReconciliationEngine(
            gateway,
            self.pauser,
            cfg.reconcile,
            slippage=cfg.execution.slippage,
            order_ttl_sec=cfg.execution.order_ttl_sec,
            notifier=notifier,
        )
        self._alerted_trip: Optional[int] = None

    @property
    def tracked(self) -> List[str]:
        return list(self.cfg.instruments.tracked)

    @property
    def reconcile_ids(self) -> List[str]:
        return self.cfg.instruments.reconcile_ids()

    # -------------------- startup --------------------

    def _load_instruments(self) -> Dict[str, Instrument]:
        # single attempt; the gateway already retries network errors. Failure ends the run (exit code 1)
        try:
            return self.gateway.list_instruments()
        except TransientGatewayError as e:
            log.error(f"Loading markets failed: {e}")
            raise

    def startup(self) -> None:
        instruments = self._load_instruments()
        missing = [i for i in self.reconcile_ids if i not in instruments]
        if missing:
            raise ConfigurationError(f"Unknown instruments for this exchange: {missing}")
        self.gateway.prepare(self.reconcile_ids)

        mode = "auto (best reward coefficient)" if self.cfg.instruments.auto else ", ".join(self.tracked)
        log.info(f"Tracking: {mode} | reconciling: {', '.join(self.reconcile_ids)}")
        if self.notifier:
            self.notifier.send_embed(
                title="perp-cycler started",
                description=f"Account {self.gateway.account_id}",
                fields=[{"name": "tracking", "value": mode}, {"name": "reconciling", "value": ", ".join(self.reconcile_ids)}],
                color=DiscordNotifier.COLOR_GREEN,
            )

        self.reconciler.reconcile_all(self.reconcile_ids)

    def check(self) -> Dict[str, float]:
        """Residual per reconciled instrument, without trading."""
        self._load_instruments()
        return {i: self.reconciler.residual(i) for i in self.reconcile_ids}

    # -------------------- one cycle --------------------

    def _intent(self, product_id: str, amount: float, price: float, reduce_only: bool = False) -> OrderIntent:
        return build_intent(
            self.gateway,
            product_id,
            amount,
            price,
            slippage=self.cfg.execution.slippage,
            ttl_sec=self.cfg.execution.order_ttl_sec,
            reduce_only=reduce_only,
        )

    def _cycle(self, record: CycleRecord) -> None:
        product_id = self.selector.select_instrument(self.tracked)
        instrument = self.gateway.get_instrument(product_id)
        record.product_id = product_id

        price = self.gateway.get_mark_price(product_id)
        side = self.randomizer.pick_side()
        record.side = side

        quote = self.selector.compute_order_size(product_id, side, price, self.cfg.sizing.percent)
        amount = instrument.round_human(instrument.to_human(quote.raw_amount))
        # rounding may push the order under the minimum even when the draw was above it
        if quote.below_minimum or amount == 0 or abs(amount) < instrument.to_human(quote.min_size):
            log.info(
                f"Amount is lower than minSize: {instrument.name} {abs(quote.raw_amount):.8g} "
                f"< {quote.min_size:.8g} (max {quote.max_size:.8g}); skipping cycle"
            )
            record.status = "skipped"
            return

        self.pauser.check()
        opened = self.gateway.submit_order(self._intent(product_id, amount, price))
        log.info(
            f"Open {side.value} {abs(amount)} {instrument.name} [price: {price}] "
            f"[{quote.pct * 100:.0f}%]: {opened.status}"
        )
        if not opened.ok:
            log.warning(f"Open {instrument.name} not accepted: {opened.raw}")
            record.status = "open_failed"
            return
        record.status = "opened"
        record.size = amount

        self.pauser.pause(self.cfg.pause.before_close.lo, self.cfg.pause.before_close.hi)

        close_price = self.gateway.get_mark_price(product_id)
        self.pauser.check()
        closed = self.gateway.submit_order(self._intent(product_id, -amount, close_price, reduce_only=True))
        log.info(f"Close {instrument.name} {-amount:+} [price: {close_price}]: {closed.status}")
        if closed.ok:
            record.status = "closed"
        else:
            log.warning(f"Close {instrument.name} not accepted ({closed.raw}); reconciliation will unwind it")
            record.status = "close_failed"

    def run_cycle(self, balance_before: float) -> CycleRecord:
        record = CycleRecord(balance_before=balance_before)
        try:
            self._cycle(record)
        except TransientGatewayError as e:
            log.warning(f"Cycle aborted: {e}")
            record.status = "close_failed" if record.status == "opened" else "error"
        except ShutdownRequested:
            if record.status == "opened":
                log.warning(
                    f"Shutdown during hold: {record.size:+} {record.product_id} left open; "
                    f"it is force-closed by reconciliation on the next start"
                )
            raise
        return record

    # -------------------- loop --------------------

    def _trading_blocked(self) -> bool:
        stop_path = self.cfg.paths.emergency_stop_path
        if stop_path and os.path.exists(stop_path):
            log.error(f"EMERGENCY_STOP file present at {stop_path}; not opening new positions")
            return True
        if self.gateway.is_degraded():
            self._report_degraded(self.gateway.degraded_status())
            return True
        return False

    def _report_degraded(self, status: Dict[str, Any]) -> None:
        log.error(
            f"API circuit breaker open: {status.get('recent_errors', '?')} recent errors "
            f"(max {status.get('max_errors', '?')}), cooldown remaining "
            f"{float(status.get('cooldown_remaining', 0.0)):.0f}s; skipping cycle"
        )
        # one alert per trip, not one per skipped cycle
        trip = status.get("tripped_count")
        if self.notifier and trip != self._alerted_trip:
            self._alerted_trip = trip
            self.notifier.send_embed(
                title="API circuit breaker tripped",
                description="New cycles are paused until the cooldown expires.",
                fields=[
                    {"name": "recent errors", "value": status.get("recent_errors", "?")},
                    {"name": "cooldown (s)", "value": f"{float(status.get('cooldown_remaining', 0.0)):.0f}"},
                ],
                color=DiscordNotifier.COLOR_ORANGE,
            )

    def _between_trades(self) -> None:
        self.pauser.pause(self.cfg.pause.between_trades.lo, self.cfg.pause.between_trades.hi)

    def _finish(self, record: CycleRecord) -> None:
        try:
            record.balance_after = self.gateway.get_account_health()
        except TransientGatewayError as e:
            log.warning(f"Balance after cycle unavailable: {e}")
        if record.balance_after is not None:
            sign = "+" if record.delta > 0 else ""
            log.info(f"Balance change: {sign}{record.delta:.2f} [{record.status}]")
        log.info("-" * 60)
        write_heartbeat(
            self.cfg.paths.heartbeat_path,
            status=record.status,
            product_id=record.product_id,
            balance=record.balance_after,
        )

    def run(self) -> int:
        """Returns the process exit code (0 for both zero-health stop and shutdown)."""
        cycles = 0
        try:
            self.startup()
            while True:
                try:
                    health = self.gateway.get_account_health()
                except TransientGatewayError as e:
                    log.warning(f"Balance check failed: {e}")
                    self._between_trades()
                    continue

                log.info(f"=== Cycle start {utcnow().isoformat()} | Balance: {health:.2f} ===")
                if health <= 0:
                    log.info(f"Account health {health:.2f} <= 0; stopping after {cycles} cycles")
                    if self.notifier:
                        self.notifier.send_message(f"perp-cycler stopped: account health {health:.2f}")
                    return 0

                if self._trading_blocked():
                    self._between_trades()
                    continue

                # global gate: nothing opens while any instrument holds a residual
                self.reconciler.reconcile_all(self.reconcile_ids)

                record = self.run_cycle(health)
                cycles += 1
                if record.traded:
                    self.pauser.sleep(float(self.cfg.reconcile.settle_delay_sec))
                    self.reconciler.reconcile_all(self.reconcile_ids)

                self._finish(record)
                self._between_trades()
        except ShutdownRequested:
            log.warning(f"Shutdown requested after {cycles} cycles; no further orders will be placed")
            if self.notifier:
                self.notifier.send_message(f"perp-cycler stopped by operator after {cycles} cycles")
            return 0
