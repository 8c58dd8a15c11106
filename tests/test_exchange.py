import math
import time

import ccxt
import pytest
from ccxt.base.decimal_to_precision import TICK_SIZE

from perp_cycler.config import ExecutionCfg, RiskCfg
from perp_cycler.errors import TransientGatewayError
from perp_cycler.exchange import CcxtGateway, _precision_digits
from perp_cycler.models import Side
from perp_cycler.orders import build_intent

from conftest import make_config

BTC_SYM = "BTC/USDC:USDC"
ETH_SYM = "ETH/USDC:USDC"


def _market(symbol, base, amount_step, min_amt, max_amt=None, **kw):
    m = {
        "symbol": symbol,
        "base": base,
        "settle": "USDC",
        "swap": True,
        "linear": True,
        "active": True,
        "contractSize": 1.0,
        "precision": {"amount": amount_step, "price": 0.1},
        "limits": {"amount": {"min": min_amt, "max": max_amt}},
    }
    m.update(kw)
    return m


class FakeCcxt:
    """Just enough of a ccxt exchange for the gateway: TICK_SIZE precision, USDC perps."""

    id = "fakeperp"
    precisionMode = TICK_SIZE

    def __init__(self):
        self.markets = {
            BTC_SYM: _market(BTC_SYM, "BTC", 0.001, 0.001, max_amt=2.0),
            ETH_SYM: _market(ETH_SYM, "ETH", 0.01, 0.01),
            "BTC/USDT:USDT": _market("BTC/USDT:USDT", "BTC", 0.001, 0.001, settle="USDT"),
            "BTC/USDC": _market("BTC/USDC", "BTC", 0.0001, 0.0001, swap=False),
        }
        self.free = 1000.0
        self.tickers = {BTC_SYM: {"markPrice": 20000.04}, ETH_SYM: {"last": 1500.0}}
        self.trades = {}
        self.positions = []
        self.created = []
        self.create_response = {"status": "closed", "filled": 1.0}
        self.create_error = None
        self.balance_error = None
        self.leverage_calls = []

    def load_markets(self):
        return self.markets

    def market(self, symbol):
        return self.markets[symbol]

    def set_leverage(self, leverage, symbol):
        self.leverage_calls.append((leverage, symbol))

    def fetch_balance(self):
        if self.balance_error:
            raise self.balance_error
        return {"free": {"USDC": self.free}}

    def fetch_ticker(self, symbol):
        return self.tickers[symbol]

    def price_to_precision(self, symbol, price):
        return str(round(float(price), 1))

    def amount_to_precision(self, symbol, amount):
        step = self.markets[symbol]["precision"]["amount"]
        digits = int(round(-math.log10(step)))
        truncated = math.floor(float(amount) * 10 ** digits) / 10 ** digits
        if truncated == 0:
            raise ccxt.InvalidOrder(f"amount of {symbol} must be greater than minimum amount precision")
        return str(truncated)

    def fetch_my_trades(self, symbol, since=None, limit=None):
        return list(self.trades.get(symbol, []))[:limit]

    def fetch_positions(self, symbols=None):
        return [p for p in self.positions if symbols is None or p["symbol"] in symbols]

    def create_order(self, symbol, type, side, amount, price, params=None):
        self.created.append((symbol, type, side, amount, price, dict(params or {})))
        if self.create_error:
            raise self.create_error
        return self.create_response


@pytest.fixture
def client():
    return FakeCcxt()


@pytest.fixture
def gw(client):
    return CcxtGateway(make_config(tracked=(BTC_SYM,)), client=client)


def test_precision_digits():
    assert _precision_digits(0.001, TICK_SIZE) == 3
    assert _precision_digits(1, TICK_SIZE) == 0
    assert _precision_digits(4, 2) == 4
    assert _precision_digits(None, TICK_SIZE) == 8


def test_only_quote_settled_linear_swaps_are_listed(gw):
    instruments = gw.list_instruments()
    assert set(instruments) == {BTC_SYM, ETH_SYM}
    btc = instruments[BTC_SYM]
    assert btc.name == "BTC-PERP"
    assert btc.decimals == 0 and btc.digits == 3 and btc.min_size == 0.001
    assert instruments[ETH_SYM].digits == 2


def test_mark_price_falls_back_and_rounds(gw, client):
    assert gw.get_mark_price(BTC_SYM) == 20000.0
    assert gw.get_mark_price(ETH_SYM) == 1500.0
    client.tickers[ETH_SYM] = {}
    with pytest.raises(TransientGatewayError):
        gw.get_mark_price(ETH_SYM)


def test_health_is_free_collateral(gw, client):
    assert gw.get_account_health() == 1000.0
    client.balance_error = ccxt.ExchangeError("boom")
    with pytest.raises(TransientGatewayError):
        gw.get_account_health()


def test_max_order_size(gw, client):
    # 1000 USDC at 1x over 20100 -> 0.04975 -> truncated to 3 digits
    assert gw.get_max_order_size(BTC_SYM, Side.LONG, 20100.0) == 0.049
    client.free = 10 ** 9
    assert gw.get_max_order_size(BTC_SYM, Side.LONG, 20100.0) == 2.0
    client.free = 0.0
    assert gw.get_max_order_size(BTC_SYM, Side.SHORT, 19900.0) == 0.0
    client.free = 0.01
    assert gw.get_max_order_size(BTC_SYM, Side.SHORT, 19900.0) == 0.0


def test_fills_carry_post_trade_balance(gw, client):
    client.trades[BTC_SYM] = [
        {"side": "buy", "amount": 0.5, "price": 20000.0, "timestamp": 1},
        {"side": "sell", "amount": 0.2, "price": 20010.0, "timestamp": 2},
    ]
    client.positions = [{"symbol": BTC_SYM, "side": "long", "contracts": 0.3}]

    fills = gw.get_recent_fills(gw.account_id, BTC_SYM, 10)

    assert [f.timestamp for f in fills] == [2, 1]
    assert fills[0].amount == pytest.approx(-0.2)
    assert fills[0].post_balance == pytest.approx(0.3)
    assert fills[1].post_balance == pytest.approx(0.5)


def test_short_position_without_trades_gives_synthetic_fill(gw, client):
    client.positions = [{"symbol": BTC_SYM, "side": "short", "contracts": 0.4}]
    (fill,) = gw.get_recent_fills(gw.account_id, BTC_SYM, 10)
    assert fill.post_balance == pytest.approx(-0.4)


def test_no_history_no_position(gw):
    assert gw.get_recent_fills(gw.account_id, BTC_SYM, 10) == []


def test_submit_sends_ioc_limit_with_reduce_only(gw, client):
    intent = build_intent(gw, BTC_SYM, -0.25, 20000.0, reduce_only=True)
    result = gw.submit_order(intent)
    assert result.ok
    symbol, type_, side, amount, price, params = client.created[0]
    assert (symbol, type_, side, amount) == (BTC_SYM, "limit", "sell", 0.25)
    assert price == 19900.0
    assert params == {"timeInForce": "IOC", "reduceOnly": True, "clientOrderId": f"pc{intent.nonce}"}


def test_retries_carry_distinct_client_order_ids(gw, client):
    gw.submit_order(build_intent(gw, BTC_SYM, 0.1, 20000.0))
    gw.submit_order(build_intent(gw, BTC_SYM, 0.1, 20000.0))
    first, second = (c[5]["clientOrderId"] for c in client.created)
    assert first != second


def test_hyperliquid_client_order_id_is_128_bit_hex(client):
    client.id = "hyperliquid"
    gw = CcxtGateway(make_config(tracked=(BTC_SYM,)), client=client)
    intent = build_intent(gw, BTC_SYM, 0.1, 20000.0)
    gw.submit_order(intent)
    cloid = client.created[0][5]["clientOrderId"]
    assert cloid.startswith("0x") and len(cloid) == 34
    assert int(cloid, 16) == intent.nonce


def test_submit_statuses(gw, client):
    intent = build_intent(gw, BTC_SYM, 0.1, 20000.0)

    client.create_response = {"status": "canceled", "filled": 0.0}
    assert gw.submit_order(intent).status == "unfilled"

    client.create_response = {"status": "rejected"}
    assert gw.submit_order(intent).status == "rejected"

    client.create_error = ccxt.InsufficientFunds("margin")
    assert gw.submit_order(intent).status == "failure"


def test_expired_intent_is_not_sent(gw, client):
    intent = build_intent(gw, BTC_SYM, 0.1, 20000.0, ttl_sec=60, now=time.time() - 120)
    assert gw.submit_order(intent).status == "expired"
    assert client.created == []


def test_dry_mode_never_sends(client):
    gw = CcxtGateway(make_config(tracked=(BTC_SYM,)), dry=True, client=client)
    assert gw.submit_order(build_intent(gw, BTC_SYM, 0.1, 20000.0)).ok
    gw.prepare([BTC_SYM])
    assert client.created == []
    assert client.leverage_calls == []


def test_prepare_sets_leverage(gw, client):
    gw.prepare([BTC_SYM, ETH_SYM])
    assert client.leverage_calls == [(1, BTC_SYM), (1, ETH_SYM)]


def test_reward_coefficients_from_config(client):
    cfg = make_config(tracked=("auto",), universe=[BTC_SYM], reward_coefficients={BTC_SYM: 0.4})
    assert CcxtGateway(cfg, client=client).get_reward_coefficients("acct") == {BTC_SYM: 0.4}
    with pytest.raises(TransientGatewayError):
        CcxtGateway(make_config(), client=client).get_reward_coefficients("acct")


def test_repeated_errors_trip_the_breaker(client):
    cfg = make_config(tracked=(BTC_SYM,))
    cfg.risk = RiskCfg(api_circuit_breaker={"enabled": True, "max_errors": 2, "window_seconds": 60, "cooldown_seconds": 60})
    gw = CcxtGateway(cfg, client=client)
    client.balance_error = ccxt.ExchangeError("boom")
    for _ in range(2):
        with pytest.raises(TransientGatewayError):
            gw.get_account_health()
    assert gw.is_degraded()


def test_time_in_force_is_configurable(client):
    cfg = make_config(tracked=(BTC_SYM,))
    cfg.execution = ExecutionCfg(time_in_force="GTC")
    gw = CcxtGateway(cfg, client=client)
    gw.submit_order(build_intent(gw, BTC_SYM, 0.1, 20000.0))
    assert client.created[0][5]["timeInForce"] == "GTC"
