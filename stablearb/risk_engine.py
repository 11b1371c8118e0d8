# stablearb/risk_engine.py
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import AppConfig, RiskControllerType
from .errors import InvalidConfigError
from .market_engine import ExchangeClient
from .models import HUNDRED, ZERO, ArbitrageOpportunity, ArbitrageResult, ArbitrageStatus, QuoteCurrency, split_symbol

logger = logging.getLogger(__name__)

Verdict = Tuple[bool, Optional[str]]


class RiskController(ABC):
    """
    One gate in the risk chain.
    check_opportunity returns (allowed, reason); the reason is set on denial.
    """
    name: str = "RiskController"

    @abstractmethod
    async def check_opportunity(self, opportunity: ArbitrageOpportunity) -> Verdict: ...

    async def record_result(self, result: ArbitrageResult) -> None:
        pass

    async def reset(self) -> None:
        pass


class RiskManager:
    """
    Runs every controller in order and collects all denial reasons.
    A controller that raises counts as a denial.
    """
    def __init__(self, controllers: Optional[List[RiskController]] = None):
        self.controllers: List[RiskController] = list(controllers or [])

    def add_controller(self, controller: RiskController):
        self.controllers.append(controller)

    @property
    def controller_names(self) -> List[str]:
        return [c.name for c in self.controllers]

    async def validate_opportunity(self, opportunity: ArbitrageOpportunity) -> Tuple[bool, List[str]]:
        reasons: List[str] = []
        for controller in self.controllers:
            try:
                allowed, reason = await controller.check_opportunity(opportunity)
            except Exception as e:
                logger.warning(f"⚠️ {controller.name} check raised: {e}")
                reasons.append(f"{controller.name}: risk check error - {e}")
                continue
            if not allowed:
                reasons.append(f"{controller.name}: {reason or 'denied'}")
        return not reasons, reasons

    async def record_result(self, result: ArbitrageResult):
        for controller in self.controllers:
            await controller.record_result(result)

    async def reset_all(self):
        for controller in self.controllers:
            await controller.reset()
        logger.info("Risk controllers reset")


class DailyLossLimitController(RiskController):
    """Halts trading once today's realized PnL falls past the configured loss."""
    name = "DailyLossLimit"

    def __init__(self, max_daily_loss: Decimal, clock: Callable[[], float] = time.time):
        self.max_daily_loss = max_daily_loss
        self.clock = clock
        self._daily_pnl = ZERO
        self._day: date = self._today()
        self._lock = threading.Lock()

    def _today(self) -> date:
        return datetime.fromtimestamp(self.clock()).date()

    def _roll_day(self):
        today = self._today()
        if today != self._day:
            logger.info(f"New trading day {today}, daily PnL reset (was {self._daily_pnl})")
            self._day = today
            self._daily_pnl = ZERO

    @property
    def daily_pnl(self) -> Decimal:
        with self._lock:
            self._roll_day()
            return self._daily_pnl

    async def check_opportunity(self, opportunity):
        with self._lock:
            self._roll_day()
            pnl = self._daily_pnl
        if pnl < -self.max_daily_loss:
            return False, f"daily loss limit reached (PnL {pnl:.2f}, limit -{self.max_daily_loss:.2f})"
        return True, None

    async def record_result(self, result):
        if result.status is not ArbitrageStatus.COMPLETED:
            return
        with self._lock:
            self._roll_day()
            self._daily_pnl += result.profit

    async def reset(self):
        with self._lock:
            self._daily_pnl = ZERO


class AbnormalPriceController(RiskController):
    """
    Denies when the newest price of either market jumps away from the mean
    of its earlier samples, then keeps denying for a cooldown period.
    """
    name = "AbnormalPrice"

    def __init__(self, base_asset: str, window_size: int = 30,
                 abnormal_threshold: Decimal = Decimal("5.0"), cooldown_period: int = 300,
                 clock: Callable[[], float] = time.time):
        self.usdt_symbol = QuoteCurrency.USDT.symbol(base_asset)
        self.usdc_symbol = QuoteCurrency.USDC.symbol(base_asset)
        self.window_size = window_size
        self.abnormal_threshold = abnormal_threshold
        self.cooldown_period = cooldown_period
        self.clock = clock
        self._history: deque = deque(maxlen=window_size * 2)
        self._last_abnormal: Optional[float] = None
        self._lock = threading.Lock()

    def add_price(self, symbol: str, price: Decimal):
        with self._lock:
            self._history.append((self.clock(), symbol, price))

    def _deviation(self, symbol: str) -> Optional[Decimal]:
        prices = [p for _, s, p in self._history if s == symbol]
        if len(prices) < 2:
            return None
        mean = sum(prices[:-1], ZERO) / (len(prices) - 1)
        if mean == ZERO:
            return None
        return abs(prices[-1] - mean) / mean * HUNDRED

    async def check_opportunity(self, opportunity):
        now = self.clock()
        with self._lock:
            self._history.append((now, opportunity.buy_symbol, opportunity.buy_price))
            self._history.append((now, opportunity.sell_symbol, opportunity.sell_price))

            if self._last_abnormal is not None and now - self._last_abnormal < self.cooldown_period:
                remaining = self.cooldown_period - (now - self._last_abnormal)
                return False, f"still in abnormal price cooldown ({remaining:.0f}s left)"

            for symbol in (self.usdt_symbol, self.usdc_symbol):
                deviation = self._deviation(symbol)
                if deviation is not None and deviation > self.abnormal_threshold:
                    self._last_abnormal = now
                    logger.warning(f"⛔ Abnormal move on {symbol}: {deviation:.2f}% from mean")
                    return False, (f"abnormal price movement on {symbol}: {deviation:.2f}% "
                                   f"exceeds {self.abnormal_threshold}%")
        return True, None

    async def reset(self):
        with self._lock:
            self._history.clear()
            self._last_abnormal = None


class ExposureController(RiskController):
    """Caps the base-asset position the account would hold after the buy leg."""
    name = "Exposure"

    def __init__(self, client: ExchangeClient, max_exposures: Optional[Dict[str, Decimal]] = None):
        self.client = client
        self.max_exposures: Dict[str, Decimal] = dict(max_exposures or {})
        self.positions: Dict[str, Decimal] = {}
        self._lock = threading.Lock()

    def set_max_exposure(self, asset: str, amount: Decimal):
        with self._lock:
            self.max_exposures[asset] = amount

    async def update_position(self, asset: str) -> Decimal:
        balance = await self.client.get_account_balance(asset)
        with self._lock:
            self.positions[asset] = balance
        return balance

    async def check_opportunity(self, opportunity):
        asset = opportunity.base_asset
        with self._lock:
            limit = self.max_exposures.get(asset)
        if limit is None:
            return True, None
        if opportunity.buy_price <= ZERO:
            return False, f"cannot size exposure at buy price {opportunity.buy_price}"

        position = await self.update_position(asset)
        trade_base = opportunity.max_trade_amount / opportunity.buy_price
        projected = position + trade_base
        if abs(projected) > limit:
            return False, (f"{asset} exposure {projected:.8f} would exceed limit {limit} "
                           f"(current {position}, trade {trade_base:.8f})")
        return True, None

    async def reset(self):
        with self._lock:
            self.positions.clear()


class TimeWindowController(RiskController):
    """Allows trading only inside a daily local-time window."""
    name = "TimeWindow"

    def __init__(self, start_hour: int = 0, start_minute: int = 0, end_hour: int = 23,
                 end_minute: int = 59, trade_on_weekends: bool = True,
                 now: Callable[[], datetime] = datetime.now):
        for label, value, upper in (("start_hour", start_hour, 23), ("end_hour", end_hour, 23),
                                    ("start_minute", start_minute, 59), ("end_minute", end_minute, 59)):
            if not 0 <= value <= upper:
                raise InvalidConfigError(f"time window {label}={value} outside 0-{upper}")
        self.start = (start_hour, start_minute)
        self.end = (end_hour, end_minute)
        self.trade_on_weekends = trade_on_weekends
        self.now = now

    def in_window(self, moment: datetime) -> bool:
        current = (moment.hour, moment.minute)
        if self.start <= self.end:
            return self.start <= current <= self.end
        # window wraps midnight
        return current >= self.start or current <= self.end

    async def check_opportunity(self, opportunity):
        moment = self.now()
        if moment.weekday() >= 5 and not self.trade_on_weekends:
            return False, "weekend trading is disabled"
        if not self.in_window(moment):
            return False, (f"outside trading window {self.start[0]:02d}:{self.start[1]:02d}-"
                           f"{self.end[0]:02d}:{self.end[1]:02d} (now {moment:%H:%M})")
        return True, None


class FrequencyController(RiskController):
    """Rate limits trades: a minimum gap plus a cap per trailing timeframe."""
    name = "Frequency"

    def __init__(self, min_interval_seconds: int = 30, max_trades_per_timeframe: int = 10,
                 timeframe_seconds: int = 600, clock: Callable[[], float] = time.time):
        self.min_interval_seconds = min_interval_seconds
        self.max_trades_per_timeframe = max_trades_per_timeframe
        self.timeframe_seconds = timeframe_seconds
        self.clock = clock
        self._trades: deque = deque()
        self._last_trade: Optional[float] = None
        self._lock = threading.Lock()

    async def check_opportunity(self, opportunity):
        now = self.clock()
        with self._lock:
            if self._last_trade is not None:
                elapsed = now - self._last_trade
                if elapsed < self.min_interval_seconds:
                    wait = self.min_interval_seconds - elapsed
                    return False, f"trade frequency too high, wait {wait:.0f}s"

            cutoff = now - self.timeframe_seconds
            while self._trades and self._trades[0] <= cutoff:
                self._trades.popleft()
            if len(self._trades) >= self.max_trades_per_timeframe:
                return False, (f"{len(self._trades)} trades in the last {self.timeframe_seconds}s "
                               f"(max {self.max_trades_per_timeframe})")
        return True, None

    async def record_result(self, result):
        # failed attempts count towards the rate as well
        if result.status not in (ArbitrageStatus.COMPLETED, ArbitrageStatus.FAILED):
            return
        now = self.clock()
        with self._lock:
            self._trades.append(now)
            self._last_trade = now

    async def reset(self):
        with self._lock:
            self._trades.clear()
            self._last_trade = None


class PairBlacklistController(RiskController):
    """Blocks a base asset when either of its stablecoin pairs is blacklisted."""
    name = "PairBlacklist"

    def __init__(self, symbols: Optional[List[str]] = None):
        self._blacklist: Set[str] = set()
        self._lock = threading.Lock()
        for symbol in symbols or []:
            try:
                base, quote = split_symbol(symbol)
            except ValueError:
                logger.warning(f"⚠️ Ignoring blacklist entry '{symbol}': must end with USDT or USDC")
                continue
            self.add_to_blacklist(base, quote)

    def add_to_blacklist(self, base_asset: str, quote: QuoteCurrency):
        with self._lock:
            self._blacklist.add(quote.symbol(base_asset))

    def remove_from_blacklist(self, base_asset: str, quote: QuoteCurrency):
        with self._lock:
            self._blacklist.discard(quote.symbol(base_asset))

    def add_base_asset(self, base_asset: str):
        for quote in QuoteCurrency:
            self.add_to_blacklist(base_asset, quote)

    def remove_base_asset(self, base_asset: str):
        for quote in QuoteCurrency:
            self.remove_from_blacklist(base_asset, quote)

    def get_blacklist(self) -> Set[str]:
        with self._lock:
            return set(self._blacklist)

    async def check_opportunity(self, opportunity):
        base = opportunity.base_asset
        with self._lock:
            listed = any(q.symbol(base) in self._blacklist for q in QuoteCurrency)
        if listed:
            return False, f"{base} is blacklisted, arbitrage skipped"
        return True, None

    async def reset(self):
        with self._lock:
            self._blacklist.clear()


def build_risk_manager(config: AppConfig, client: ExchangeClient, base_asset: str) -> RiskManager:
    """Instantiates the enabled controllers in configured order."""
    risk = config.risk
    manager = RiskManager()
    for kind in risk.enabled:
        if kind is RiskControllerType.DAILY_LOSS:
            controller = DailyLossLimitController(risk.daily_loss.max_daily_loss)
        elif kind is RiskControllerType.ABNORMAL_PRICE:
            ap = risk.abnormal_price
            controller = AbnormalPriceController(base_asset, ap.window_size, ap.abnormal_threshold,
                                                 ap.cooldown_period)
        elif kind is RiskControllerType.EXPOSURE:
            controller = ExposureController(client, risk.exposure)
        elif kind is RiskControllerType.TIME_WINDOW:
            tw = risk.time_window
            controller = TimeWindowController(tw.start_hour, tw.start_minute, tw.end_hour,
                                              tw.end_minute, tw.trade_on_weekends)
        elif kind is RiskControllerType.FREQUENCY:
            fq = risk.frequency
            controller = FrequencyController(fq.min_interval_seconds, fq.max_trades_per_timeframe,
                                             fq.timeframe_seconds)
        else:
            controller = PairBlacklistController(risk.blacklist)
        manager.add_controller(controller)
        logger.info(f"[CONFIG] Risk controller enabled: {controller.name}")
    return manager
