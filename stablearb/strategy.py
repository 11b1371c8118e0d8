# stablearb/strategy.py
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .config import AppConfig, StrategyType
from .errors import StrategyError
from .market_engine import ExchangeClient
from .models import HUNDRED, ZERO, ArbitrageOpportunity, OrderBook, QuoteCurrency, Side

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def spot_opportunity(base_asset: str, usdt_price: Decimal, usdc_price: Decimal,
                     max_trade_amount: Decimal) -> ArbitrageOpportunity:
    """Cheap leg is the lower price; ties buy USDC."""
    if usdt_price < usdc_price:
        return ArbitrageOpportunity.create(base_asset, QuoteCurrency.USDT, QuoteCurrency.USDC,
                                           usdt_price, usdc_price, max_trade_amount)
    return ArbitrageOpportunity.create(base_asset, QuoteCurrency.USDC, QuoteCurrency.USDT,
                                       usdc_price, usdt_price, max_trade_amount)


def _mean(values) -> Decimal:
    values = list(values)
    return sum(values, ZERO) / len(values)


class Strategy(ABC):
    """
    Turns a (USDT, USDC) price pair into an optional opportunity.
    Implementations may keep private price history updated on each call.
    """
    name: str = "Strategy"
    description: str = ""

    def __init__(self, min_profit_percentage: Decimal, max_trade_amount: Decimal):
        self.min_profit_percentage = min_profit_percentage
        self.max_trade_amount = max_trade_amount

    @abstractmethod
    async def find_opportunity(self, base_asset: str, usdt_price: Decimal,
                               usdc_price: Decimal) -> Optional[ArbitrageOpportunity]: ...

    async def validate(self, opportunity: ArbitrageOpportunity) -> bool:
        return opportunity.profit_percentage >= self.threshold()

    def threshold(self) -> Decimal:
        return self.min_profit_percentage


class SimpleStrategy(Strategy):
    name = "Simple"
    description = "Buys the cheaper quote at spot and sells the dearer one"

    async def find_opportunity(self, base_asset, usdt_price, usdc_price):
        return spot_opportunity(base_asset, usdt_price, usdc_price, self.max_trade_amount)


class TwapStrategy(Strategy):
    """
    Prices each leg at the time-weighted average of recent samples
    and trades one slice of the configured amount per opportunity.
    """
    name = "TWAP"
    description = "Time-weighted average prices, trade split into slices"

    HISTORY_LIMIT = 100
    WINDOW_SECONDS = 300
    THRESHOLD_FACTOR = Decimal("0.8")

    def __init__(self, min_profit_percentage, max_trade_amount, slices: int = 5,
                 interval_seconds: int = 60, clock: Clock = time.time):
        super().__init__(min_profit_percentage, max_trade_amount)
        self.slices = slices
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._history: deque = deque(maxlen=self.HISTORY_LIMIT)
        self._lock = threading.Lock()

    def record_price(self, usdt_price: Decimal, usdc_price: Decimal):
        with self._lock:
            self._history.append((self.clock(), usdt_price, usdc_price))

    def calculate_twap(self, window_seconds: int = WINDOW_SECONDS) -> Optional[Tuple[Decimal, Decimal]]:
        cutoff = self.clock() - window_seconds
        with self._lock:
            recent = [(usdt, usdc) for ts, usdt, usdc in self._history if ts >= cutoff]
        if not recent:
            return None
        return _mean(p[0] for p in recent), _mean(p[1] for p in recent)

    async def find_opportunity(self, base_asset, usdt_price, usdc_price):
        self.record_price(usdt_price, usdc_price)
        twap = self.calculate_twap()
        twap_usdt, twap_usdc = twap if twap is not None else (usdt_price, usdc_price)
        slice_amount = self.max_trade_amount / self.slices
        logger.debug(f"TWAP {base_asset}: USDT={twap_usdt} USDC={twap_usdc} slice={slice_amount} "
                     f"every {self.interval_seconds}s")
        return spot_opportunity(base_asset, twap_usdt, twap_usdc, slice_amount)

    def threshold(self):
        return self.min_profit_percentage * self.THRESHOLD_FACTOR


@dataclass(slots=True)
class DepthAnalysis:
    executed: Decimal
    slippage_pct: Decimal
    fully_filled: bool


class OrderBookDepthStrategy(Strategy):
    """
    Walks both order books for the intended size and prices each leg
    at its slippage-adjusted effective price.
    """
    name = "OrderBookDepth"
    description = "Slippage-adjusted prices from walking the order books"

    THRESHOLD_FACTOR = Decimal("1.5")

    def __init__(self, min_profit_percentage, max_trade_amount, client: ExchangeClient,
                 depth_levels: int = 20, min_liquidity: Decimal = Decimal("1.0")):
        super().__init__(min_profit_percentage, max_trade_amount)
        self.client = client
        self.depth_levels = depth_levels
        self.min_liquidity = min_liquidity

    @staticmethod
    def walk_book(book: OrderBook, side: Side, amount: Decimal) -> DepthAnalysis:
        levels = book.asks if side is Side.BUY else book.bids
        if not levels:
            raise StrategyError(f"order book for {book.symbol} has no {'asks' if side is Side.BUY else 'bids'}")

        best_price = levels[0][0]
        remaining = amount
        executed = ZERO
        cost = ZERO
        for price, qty in levels:
            if remaining <= ZERO:
                break
            take = min(remaining, qty)
            executed += take
            cost += take * price
            remaining -= take

        if remaining > ZERO:
            logger.warning(f"⚠️ {book.symbol}: book depth {executed} short of {amount} requested")
            return DepthAnalysis(executed, ZERO, False)

        vwap = cost / executed
        if side is Side.BUY:
            slippage = (vwap - best_price) / best_price * HUNDRED
        else:
            slippage = (best_price - vwap) / best_price * HUNDRED
        return DepthAnalysis(executed, slippage, True)

    async def analyze_depth(self, symbol: str, side: Side, amount: Decimal) -> DepthAnalysis:
        book = await self.client.get_order_book(symbol, self.depth_levels)
        return self.walk_book(book, side, amount)

    async def find_opportunity(self, base_asset, usdt_price, usdc_price):
        if usdt_price <= ZERO:
            raise StrategyError(f"invalid USDT price {usdt_price}")
        approx_base = self.max_trade_amount / usdt_price

        usdt_book = await self.client.get_order_book(QuoteCurrency.USDT.symbol(base_asset), self.depth_levels)
        usdc_book = await self.client.get_order_book(QuoteCurrency.USDC.symbol(base_asset), self.depth_levels)
        usdt_buy = self.walk_book(usdt_book, Side.BUY, approx_base)
        usdt_sell = self.walk_book(usdt_book, Side.SELL, approx_base)
        usdc_buy = self.walk_book(usdc_book, Side.BUY, approx_base)
        usdc_sell = self.walk_book(usdc_book, Side.SELL, approx_base)

        analyses = (usdt_buy, usdt_sell, usdc_buy, usdc_sell)
        if not all(a.fully_filled for a in analyses):
            return None
        if any(a.executed < self.min_liquidity for a in analyses):
            logger.info(f"Insufficient depth for {base_asset}: "
                        f"{[str(a.executed) for a in analyses]} < {self.min_liquidity}")
            return None

        usdt_eff_buy = usdt_price * (1 + usdt_buy.slippage_pct / HUNDRED)
        usdt_eff_sell = usdt_price * (1 - usdt_sell.slippage_pct / HUNDRED)
        usdc_eff_buy = usdc_price * (1 + usdc_buy.slippage_pct / HUNDRED)
        usdc_eff_sell = usdc_price * (1 - usdc_sell.slippage_pct / HUNDRED)

        if usdt_eff_buy < usdc_eff_sell:
            return ArbitrageOpportunity.create(base_asset, QuoteCurrency.USDT, QuoteCurrency.USDC,
                                               usdt_eff_buy, usdc_eff_sell, self.max_trade_amount)
        if usdc_eff_buy < usdt_eff_sell:
            return ArbitrageOpportunity.create(base_asset, QuoteCurrency.USDC, QuoteCurrency.USDT,
                                               usdc_eff_buy, usdt_eff_sell, self.max_trade_amount)
        return None

    def threshold(self):
        return self.min_profit_percentage * self.THRESHOLD_FACTOR


class SlippageControlStrategy(Strategy):
    """
    Widens each leg by the allowed slippage, damped by recent volatility,
    and demands a larger margin when the market is volatile.
    """
    name = "SlippageControl"
    description = "Volatility-aware slippage buffer on both legs"

    def __init__(self, min_profit_percentage, max_trade_amount,
                 max_slippage_pct: Decimal = Decimal("0.5"), volatility_window_size: int = 20,
                 clock: Clock = time.time):
        super().__init__(min_profit_percentage, max_trade_amount)
        self.max_slippage_pct = max_slippage_pct
        self.clock = clock
        self._history: deque = deque(maxlen=volatility_window_size)
        self._lock = threading.Lock()

    def record_price(self, usdt_price: Decimal, usdc_price: Decimal):
        with self._lock:
            self._history.append((self.clock(), usdt_price, usdc_price))

    @staticmethod
    def _coefficient_of_variation(values: List[Decimal]) -> Decimal:
        mean = _mean(values)
        if mean == ZERO:
            return ZERO
        variance = sum(((v - mean) ** 2 for v in values), ZERO) / (len(values) - 1)
        return variance.sqrt() / mean * HUNDRED

    def calculate_volatility(self) -> Tuple[Decimal, Decimal]:
        """Coefficient of variation (%) of the USDT and USDC samples."""
        with self._lock:
            samples = list(self._history)
        if len(samples) < 2:
            return ZERO, ZERO
        return (self._coefficient_of_variation([s[1] for s in samples]),
                self._coefficient_of_variation([s[2] for s in samples]))

    def volatility_factor(self) -> Decimal:
        return max(self.calculate_volatility())

    async def find_opportunity(self, base_asset, usdt_price, usdc_price):
        self.record_price(usdt_price, usdc_price)
        max_vol = self.volatility_factor()
        damping = 1 + max_vol / HUNDRED
        shift = self.max_slippage_pct / HUNDRED / damping

        raw = spot_opportunity(base_asset, usdt_price, usdc_price, self.max_trade_amount)
        return raw.reprice(raw.buy_price * (1 - shift), raw.sell_price * (1 + shift))

    def threshold(self):
        return self.min_profit_percentage * (1 + self.volatility_factor() / 20)


class TrendDirection(Enum):
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"


class TrendFollowingStrategy(Strategy):
    """
    Stays out when either market trends against the intended leg or spikes,
    and trades smaller as the prevailing trend strengthens.
    """
    name = "TrendFollowing"
    description = "Avoids adverse trends and volatility spikes, sizes down in strong trends"

    SPIKE_WINDOW_SECONDS = 300
    SPIKE_THRESHOLD_PCT = Decimal("5")
    REDUCE_ABOVE_PCT = Decimal("1")

    def __init__(self, min_profit_percentage, max_trade_amount, short_window: int = 10,
                 long_window: int = 30, trend_threshold: Decimal = Decimal("1.0"),
                 adverse_trend_limit: Decimal = Decimal("2.0"), clock: Clock = time.time):
        super().__init__(min_profit_percentage, max_trade_amount)
        self.short_window = short_window
        self.long_window = long_window
        self.trend_threshold = trend_threshold
        self.adverse_trend_limit = adverse_trend_limit
        self.clock = clock
        self._history: deque = deque(maxlen=long_window)
        self._lock = threading.Lock()

    def record_price(self, usdt_price: Decimal, usdc_price: Decimal):
        with self._lock:
            self._history.append((self.clock(), usdt_price, usdc_price))

    def calculate_trend(self, quote: QuoteCurrency) -> Tuple[TrendDirection, Decimal]:
        index = 1 if quote is QuoteCurrency.USDT else 2
        with self._lock:
            prices = [sample[index] for sample in self._history]

        if len(prices) < self.short_window or len(prices) < self.long_window:
            return TrendDirection.SIDEWAYS, ZERO

        short_mean = _mean(prices[-self.short_window:])
        long_mean = _mean(prices[-self.long_window:])
        if long_mean == ZERO:
            return TrendDirection.SIDEWAYS, ZERO

        change = (short_mean - long_mean) / long_mean * HUNDRED
        if change > self.trend_threshold:
            return TrendDirection.UP, abs(change)
        if change < -self.trend_threshold:
            return TrendDirection.DOWN, abs(change)
        return TrendDirection.SIDEWAYS, abs(change)

    def detect_volatility_spike(self) -> bool:
        cutoff = self.clock() - self.SPIKE_WINDOW_SECONDS
        with self._lock:
            recent = [s for s in self._history if s[0] >= cutoff]
        for prev, curr in zip(recent, recent[1:]):
            for i in (1, 2):
                if prev[i] == ZERO:
                    continue
                if abs((curr[i] - prev[i]) / prev[i]) * HUNDRED > self.SPIKE_THRESHOLD_PCT:
                    return True
        return False

    def trend_strength(self) -> Decimal:
        _, usdt_strength = self.calculate_trend(QuoteCurrency.USDT)
        _, usdc_strength = self.calculate_trend(QuoteCurrency.USDC)
        return max(usdt_strength, usdc_strength)

    def _is_adverse(self, direction: TrendDirection, strength: Decimal, against: TrendDirection) -> bool:
        return direction is against and strength > self.adverse_trend_limit

    async def find_opportunity(self, base_asset, usdt_price, usdc_price):
        self.record_price(usdt_price, usdc_price)

        if self.detect_volatility_spike():
            logger.warning(f"⚠️ Volatility spike on {base_asset}, skipping")
            return None

        usdt_dir, usdt_strength = self.calculate_trend(QuoteCurrency.USDT)
        usdc_dir, usdc_strength = self.calculate_trend(QuoteCurrency.USDC)

        # buying a market that is rising, or selling into one that is falling
        if usdt_price < usdc_price:
            adverse = (self._is_adverse(usdt_dir, usdt_strength, TrendDirection.UP)
                       or self._is_adverse(usdc_dir, usdc_strength, TrendDirection.DOWN))
        else:
            adverse = (self._is_adverse(usdc_dir, usdc_strength, TrendDirection.UP)
                       or self._is_adverse(usdt_dir, usdt_strength, TrendDirection.DOWN))
        if adverse:
            logger.info(f"Adverse trend on {base_asset} (USDT {usdt_dir.value} {usdt_strength:.2f}%, "
                        f"USDC {usdc_dir.value} {usdc_strength:.2f}%), skipping")
            return None

        amount = self.max_trade_amount
        strength = max(usdt_strength, usdc_strength)
        if strength > self.REDUCE_ABOVE_PCT:
            factor = 1 - (strength - 1) / 10
            amount = max(amount * factor, amount / 5)

        return spot_opportunity(base_asset, usdt_price, usdc_price, amount)

    def threshold(self):
        return self.min_profit_percentage * (1 + self.trend_strength() / 10)


def build_strategies(config: AppConfig, client: ExchangeClient) -> List[Strategy]:
    """Instantiates the enabled strategies in configured order; none means Simple."""
    arb = config.arbitrage
    st = config.strategy
    min_profit = arb.min_profit_percentage
    max_amount = arb.max_trade_amount_usdt

    strategies: List[Strategy] = []
    for kind in st.enabled or [StrategyType.SIMPLE]:
        if kind is StrategyType.SIMPLE:
            strategies.append(SimpleStrategy(min_profit, max_amount))
        elif kind is StrategyType.TWAP:
            strategies.append(TwapStrategy(min_profit, max_amount, st.twap.slices, st.twap.interval_seconds))
        elif kind is StrategyType.DEPTH:
            strategies.append(OrderBookDepthStrategy(min_profit, max_amount, client,
                                                     st.depth.depth_levels, st.depth.min_liquidity))
        elif kind is StrategyType.SLIPPAGE:
            strategies.append(SlippageControlStrategy(min_profit, max_amount, st.slippage.max_slippage_pct,
                                                      st.slippage.volatility_window_size))
        elif kind is StrategyType.TREND:
            strategies.append(TrendFollowingStrategy(min_profit, max_amount, st.trend.short_window,
                                                     st.trend.long_window, st.trend.trend_threshold,
                                                     st.trend.adverse_trend_limit))
        logger.info(f"[CONFIG] Strategy enabled: {strategies[-1].name}")
    return strategies
