# stablearb/simulated_exchange.py
import asyncio
import logging
import random
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Optional

from .errors import ExchangeError, InsufficientBalanceError
from .market_engine import ExchangeClient
from .models import (OrderBook, OrderInfo, OrderStatus, Price, QuoteCurrency, Side,
                     SymbolInfo, split_symbol, to_decimal, utcnow)

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {
    "BTCUSDT": Decimal("50000"),
    "BTCUSDC": Decimal("50025"),
    "ETHUSDT": Decimal("3000"),
    "ETHUSDC": Decimal("3002.5"),
}

DEFAULT_BALANCES = {
    "USDT": Decimal("10000"),
    "USDC": Decimal("10000"),
    "BTC": Decimal("1"),
    "ETH": Decimal("10"),
}

BOOK_LEVELS = 10


class SimulatedExchange(ExchangeClient):
    """
    In-memory venue for simulation and tests.
    Orders fill at once against the current price unless auto_fill is off,
    in which case they stay NEW until fill_order() is called.
    """
    def __init__(self, prices: Optional[Dict[str, Decimal]] = None,
                 balances: Optional[Dict[str, Decimal]] = None, auto_fill: bool = True):
        self.prices: Dict[str, Decimal] = dict(DEFAULT_PRICES if prices is None else prices)
        self.balances: Dict[str, Decimal] = dict(DEFAULT_BALANCES if balances is None else balances)
        self.auto_fill = auto_fill
        self.orders: Dict[int, OrderInfo] = {}
        self._next_order_id = 1

    # --- test / simulator controls ---

    def update_price(self, symbol: str, price) -> None:
        self.prices[symbol] = to_decimal(price)

    def set_balance(self, asset: str, amount) -> None:
        self.balances[asset] = to_decimal(amount)

    def seed_market(self, base_asset: str, usdt_price, usdc_price, base_balance=Decimal("0")) -> None:
        self.update_price(QuoteCurrency.USDT.symbol(base_asset), usdt_price)
        self.update_price(QuoteCurrency.USDC.symbol(base_asset), usdc_price)
        self.balances.setdefault(base_asset, to_decimal(base_balance))

    def fill_order(self, order_id: int, price: Optional[Decimal] = None) -> OrderInfo:
        order = self._order(order_id)
        if order.status.is_terminal:
            raise ExchangeError(f"order {order_id} is already {order.status.value}")
        self._settle(order, price if price is not None else order.price)
        return replace(order)

    # --- ExchangeClient ---

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        base, quote = self._split(symbol)
        return SymbolInfo(symbol=symbol, base_asset=base, quote_asset=quote.value,
                          min_notional=Decimal("10"), min_qty=Decimal("0.0001"),
                          step_size=Decimal("0.0001"), tick_size=Decimal("0.01"))

    async def get_price(self, symbol: str) -> Price:
        return Price(symbol=symbol, price=self._price(symbol))

    async def get_order_book(self, symbol: str, depth: int) -> OrderBook:
        price = self._price(symbol)
        thousand = Decimal(1000)
        levels = range(1, min(depth, BOOK_LEVELS) + 1)
        bids = [(price * (thousand - i) / thousand, Decimal(i) / 10) for i in levels]
        asks = [(price * (thousand + i) / thousand, Decimal(i) / 10) for i in levels]
        return OrderBook(symbol=symbol, bids=bids, asks=asks)

    async def place_order(self, symbol: str, side: Side, quantity: Decimal,
                          price: Optional[Decimal] = None) -> OrderInfo:
        base, quote = self._split(symbol)
        if quantity <= 0:
            raise ExchangeError(f"order quantity must be positive, got {quantity}")
        exec_price = self._price(symbol) if price is None else price

        if side is Side.BUY:
            needed, asset = quantity * exec_price, quote.value
        else:
            needed, asset = quantity, base
        available = self.balances.get(asset, Decimal("0"))
        if available < needed:
            raise InsufficientBalanceError(
                f"insufficient {asset} balance: need {needed}, have {available}")

        order = OrderInfo(order_id=self._next_order_id, symbol=symbol, price=exec_price,
                          quantity=quantity, side=side, status=OrderStatus.NEW)
        self._next_order_id += 1
        self.orders[order.order_id] = order
        if self.auto_fill:
            self._settle(order, exec_price)
        return replace(order)

    async def get_order_status(self, symbol: str, order_id: int) -> OrderInfo:
        return replace(self._order(order_id))

    async def cancel_order(self, symbol: str, order_id: int) -> OrderInfo:
        order = self._order(order_id)
        if order.status is OrderStatus.FILLED:
            raise ExchangeError(f"order {order_id} is already filled")
        order.status = OrderStatus.CANCELLED
        order.timestamp = utcnow()
        return replace(order)

    async def get_account_balance(self, asset: str) -> Decimal:
        return self.balances.get(asset, Decimal("0"))

    # --- internals ---

    def _split(self, symbol: str):
        try:
            return split_symbol(symbol)
        except ValueError as e:
            raise ExchangeError(str(e)) from None

    def _price(self, symbol: str) -> Decimal:
        try:
            return self.prices[symbol]
        except KeyError:
            raise ExchangeError(f"unknown symbol {symbol}") from None

    def _order(self, order_id: int) -> OrderInfo:
        try:
            return self.orders[order_id]
        except KeyError:
            raise ExchangeError(f"order {order_id} not found") from None

    def _settle(self, order: OrderInfo, price: Decimal) -> None:
        base, quote = split_symbol(order.symbol)
        notional = order.quantity * price
        zero = Decimal("0")
        if order.side is Side.BUY:
            self.balances[quote.value] = self.balances.get(quote.value, zero) - notional
            self.balances[base] = self.balances.get(base, zero) + order.quantity
        else:
            self.balances[base] = self.balances.get(base, zero) - order.quantity
            self.balances[quote.value] = self.balances.get(quote.value, zero) + notional
        order.price = price
        order.status = OrderStatus.FILLED
        order.timestamp = utcnow()


class PriceSimulator:
    """
    Random walk over a SimulatedExchange's USDT and USDC markets.
    Occasionally opens a spread so the engine has something to trade.
    """
    def __init__(self, exchange: SimulatedExchange, base_asset: str,
                 volatility: float = 1.0, opportunity_probability: float = 30.0,
                 interval: float = 1.0, rng: Optional[random.Random] = None):
        self.exchange = exchange
        self.usdt_symbol = QuoteCurrency.USDT.symbol(base_asset)
        self.usdc_symbol = QuoteCurrency.USDC.symbol(base_asset)
        self.volatility = to_decimal(volatility)
        self.opportunity_probability = to_decimal(opportunity_probability)
        self.interval = interval
        self.rng = rng or random.Random()
        self.running = False

    def _uniform(self) -> Decimal:
        return to_decimal(self.rng.random())

    def step(self):
        """Moves both prices once. Returns the new (usdt, usdc) pair."""
        usdt = self.exchange.prices.get(self.usdt_symbol, Decimal("50000"))
        usdc = self.exchange.prices.get(self.usdc_symbol, Decimal("50025"))
        half = Decimal("0.5")
        scale = self.volatility / 100

        usdt += usdt * (self._uniform() - half) * scale
        usdc += usdc * (self._uniform() - half) * scale

        if self._uniform() * 100 < self.opportunity_probability:
            usdt = usdc - self._uniform() * 50

        floor = Decimal("1")
        cent = Decimal("0.01")
        usdt = max(usdt, floor).quantize(cent)
        usdc = max(usdc, floor).quantize(cent)
        self.exchange.update_price(self.usdt_symbol, usdt)
        self.exchange.update_price(self.usdc_symbol, usdc)
        logger.debug(f"📈 Simulated prices: {self.usdt_symbol}={usdt} {self.usdc_symbol}={usdc}")
        return usdt, usdc

    async def run(self):
        self.running = True
        while self.running:
            self.step()
            await asyncio.sleep(self.interval)

    def stop(self):
        self.running = False
