"""
pytest configuration and shared fixtures.

Path bootstrap: ensures `stablearb` and `main` import from any CWD.
"""

import sys
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from stablearb.errors import ExchangeError  # noqa: E402
from stablearb.market_engine import ExchangeClient  # noqa: E402
from stablearb.models import (ArbitrageOpportunity, ArbitrageResult, ArbitrageStatus,  # noqa: E402
                              OrderInfo, OrderStatus, Price, QuoteCurrency)


class FakeClock:
    """Manually advanced time source (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedClient(ExchangeClient):
    """
    ExchangeClient whose order lifecycle is scripted per leg.
    statuses[symbol] is the sequence returned by successive polls;
    the last entry repeats.
    """

    def __init__(self, prices=None):
        self.prices = prices or {"BTCUSDT": Decimal("50000"), "BTCUSDC": Decimal("50025")}
        self.statuses = {}
        self.fill_prices = {}
        self.place_errors = {}
        self.price_errors = set()
        self.balances = {}
        self.orders = {}
        self.polls = {}
        self.cancelled = []
        self._next_id = 1

    async def get_symbol_info(self, symbol):
        raise NotImplementedError

    async def get_price(self, symbol):
        if symbol in self.price_errors:
            raise ExchangeError(f"price unavailable for {symbol}")
        return Price(symbol=symbol, price=self.prices[symbol])

    async def get_order_book(self, symbol, depth):
        raise ExchangeError("no order book")

    async def place_order(self, symbol, side, quantity, price=None):
        if symbol in self.place_errors:
            raise self.place_errors[symbol]
        script = self.statuses.get(symbol, [OrderStatus.FILLED])
        order = OrderInfo(order_id=self._next_id, symbol=symbol,
                          price=self.fill_prices.get(symbol, self.prices[symbol]),
                          quantity=quantity, side=side, status=script[0])
        self._next_id += 1
        self.orders[order.order_id] = order
        self.polls[order.order_id] = 0
        return replace(order)

    async def get_order_status(self, symbol, order_id):
        self.polls[order_id] += 1
        script = self.statuses.get(symbol, [OrderStatus.FILLED])
        order = self.orders[order_id]
        order.status = script[min(self.polls[order_id], len(script) - 1)]
        return replace(order)

    async def cancel_order(self, symbol, order_id):
        self.cancelled.append(order_id)
        order = self.orders[order_id]
        order.status = OrderStatus.CANCELLED
        return replace(order)

    async def get_account_balance(self, asset):
        return self.balances.get(asset, Decimal("0"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted_client():
    return ScriptedClient()


@pytest.fixture
def make_opportunity():
    """Factory for BTC opportunities; buy_quote USDT unless told otherwise."""

    def _make(buy_price="50000", sell_price="50025", base_asset="BTC",
              buy_quote=QuoteCurrency.USDT, max_trade_amount="100"):
        return ArbitrageOpportunity.create(base_asset, buy_quote, buy_quote.other,
                                           Decimal(buy_price), Decimal(sell_price),
                                           Decimal(max_trade_amount))

    return _make


@pytest.fixture
def make_result():
    """Factory for finished results."""

    def _make(profit="0", status=ArbitrageStatus.COMPLETED, base_asset="BTC",
              trade_amount="0.002", buy_price="50000", sell_price="50025", start_time=None):
        result = ArbitrageResult(base_asset=base_asset, buy_quote="USDT", sell_quote="USDC",
                                 buy_price=Decimal(buy_price), sell_price=Decimal(sell_price),
                                 trade_amount=Decimal(trade_amount), profit=Decimal(profit),
                                 profit_percentage=Decimal("0.05"), status=status)
        if start_time is not None:
            result.start_time = start_time
        result.end_time = result.start_time
        return result

    return _make
