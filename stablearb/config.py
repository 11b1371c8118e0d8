# stablearb/config.py
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

import yaml

from .errors import InvalidConfigError, PrecisionError
from .models import split_symbol, to_decimal

logger = logging.getLogger(__name__)


class StrategyType(Enum):
    SIMPLE = "simple"
    TWAP = "twap"
    DEPTH = "depth"
    SLIPPAGE = "slippage"
    TREND = "trend"


class RiskControllerType(Enum):
    DAILY_LOSS = "loss-limit"
    ABNORMAL_PRICE = "abnormal-price"
    EXPOSURE = "exposure"
    TIME_WINDOW = "time-window"
    FREQUENCY = "frequency"
    BLACKLIST = "blacklist"


def parse_names(raw, enum_cls, what: str) -> list:
    """Accepts 'a,b' or ['a', 'b']; unknown names are a configuration error."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    parsed = []
    for item in items:
        name = str(item).strip().lower().replace("_", "-")
        if not name:
            continue
        try:
            value = enum_cls(name)
        except ValueError:
            choices = ", ".join(e.value for e in enum_cls)
            raise InvalidConfigError(f"unknown {what} '{item}' (choose from: {choices})") from None
        if value not in parsed:
            parsed.append(value)
    return parsed


@dataclass
class ArbitrageSettings:
    min_profit_percentage: Decimal = Decimal("0.1")
    max_trade_amount_usdt: Decimal = Decimal("100")
    check_interval_ms: int = 1000
    fallback_to_spot: bool = True


@dataclass
class TwapSettings:
    slices: int = 5
    interval_seconds: int = 60


@dataclass
class DepthSettings:
    depth_levels: int = 20
    min_liquidity: Decimal = Decimal("1.0")


@dataclass
class SlippageSettings:
    max_slippage_pct: Decimal = Decimal("0.5")
    volatility_window_size: int = 20


@dataclass
class TrendSettings:
    short_window: int = 10
    long_window: int = 30
    trend_threshold: Decimal = Decimal("1.0")
    adverse_trend_limit: Decimal = Decimal("2.0")


@dataclass
class StrategySettings:
    enabled: List[StrategyType] = field(default_factory=lambda: [StrategyType.SIMPLE])
    twap: TwapSettings = field(default_factory=TwapSettings)
    depth: DepthSettings = field(default_factory=DepthSettings)
    slippage: SlippageSettings = field(default_factory=SlippageSettings)
    trend: TrendSettings = field(default_factory=TrendSettings)


@dataclass
class DailyLossSettings:
    max_daily_loss: Decimal = Decimal("50")


@dataclass
class AbnormalPriceSettings:
    window_size: int = 30
    abnormal_threshold: Decimal = Decimal("5.0")
    cooldown_period: int = 300


@dataclass
class TimeWindowSettings:
    start_hour: int = 0
    start_minute: int = 0
    end_hour: int = 23
    end_minute: int = 59
    trade_on_weekends: bool = True


@dataclass
class FrequencySettings:
    min_interval_seconds: int = 30
    max_trades_per_timeframe: int = 10
    timeframe_seconds: int = 600


@dataclass
class RiskSettings:
    enabled: List[RiskControllerType] = field(default_factory=lambda: [
        RiskControllerType.DAILY_LOSS, RiskControllerType.ABNORMAL_PRICE])
    daily_loss: DailyLossSettings = field(default_factory=DailyLossSettings)
    abnormal_price: AbnormalPriceSettings = field(default_factory=AbnormalPriceSettings)
    exposure: Dict[str, Decimal] = field(default_factory=lambda: {
        "BTC": Decimal("5.0"), "ETH": Decimal("50.0")})
    time_window: TimeWindowSettings = field(default_factory=TimeWindowSettings)
    frequency: FrequencySettings = field(default_factory=FrequencySettings)
    blacklist: List[str] = field(default_factory=list)


@dataclass
class ExchangeSettings:
    api_key: Optional[str] = None
    secret: Optional[str] = None
    sandbox: bool = False
    timeout_ms: int = 10000

    def __post_init__(self):
        # ${VAR} placeholders come from the environment
        for attr_name in ("api_key", "secret"):
            value = getattr(self, attr_name)
            if value and value.startswith("${") and value.endswith("}"):
                setattr(self, attr_name, os.getenv(value[2:-1]))
        if not self.api_key:
            self.api_key = os.getenv("BINANCE_API_KEY")
        if not self.secret:
            self.secret = os.getenv("BINANCE_API_SECRET")


@dataclass
class AuditSettings:
    trade_log: Optional[str] = "logs/arbitrage_trades.csv"


@dataclass
class AppConfig:
    arbitrage: ArbitrageSettings = field(default_factory=ArbitrageSettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)

    def validate(self):
        """Raises InvalidConfigError on the first problem found."""
        arb = self.arbitrage
        _require(arb.min_profit_percentage >= 0, "arbitrage.min_profit_percentage must be >= 0")
        _require(arb.max_trade_amount_usdt > 0, "arbitrage.max_trade_amount_usdt must be > 0")
        _require(arb.check_interval_ms > 0, "arbitrage.check_interval_ms must be > 0")

        st = self.strategy
        _require(st.twap.slices >= 1, "strategy.twap.slices must be >= 1")
        _require(st.twap.interval_seconds >= 0, "strategy.twap.interval_seconds must be >= 0")
        _require(st.depth.depth_levels >= 1, "strategy.depth.depth_levels must be >= 1")
        _require(st.depth.min_liquidity >= 0, "strategy.depth.min_liquidity must be >= 0")
        _require(st.slippage.max_slippage_pct >= 0, "strategy.slippage.max_slippage_pct must be >= 0")
        _require(st.slippage.volatility_window_size >= 2,
                 "strategy.slippage.volatility_window_size must be >= 2")
        _require(st.trend.short_window >= 1, "strategy.trend.short_window must be >= 1")
        _require(st.trend.long_window >= st.trend.short_window,
                 "strategy.trend.long_window must be >= short_window")
        _require(st.trend.trend_threshold >= 0, "strategy.trend.trend_threshold must be >= 0")

        risk = self.risk
        _require(risk.daily_loss.max_daily_loss >= 0, "risk.daily_loss.max_daily_loss must be >= 0")
        _require(risk.abnormal_price.window_size >= 1, "risk.abnormal_price.window_size must be >= 1")
        _require(risk.abnormal_price.abnormal_threshold >= 0,
                 "risk.abnormal_price.abnormal_threshold must be >= 0")
        _require(risk.abnormal_price.cooldown_period >= 0,
                 "risk.abnormal_price.cooldown_period must be >= 0")
        for asset, limit in risk.exposure.items():
            _require(limit >= 0, f"risk.exposure.{asset} must be >= 0")
        tw = risk.time_window
        for label, hour in (("start_hour", tw.start_hour), ("end_hour", tw.end_hour)):
            _require(0 <= hour <= 23, f"risk.time_window.{label} must be within 0-23")
        for label, minute in (("start_minute", tw.start_minute), ("end_minute", tw.end_minute)):
            _require(0 <= minute <= 59, f"risk.time_window.{label} must be within 0-59")
        fq = risk.frequency
        _require(fq.min_interval_seconds >= 0, "risk.frequency.min_interval_seconds must be >= 0")
        _require(fq.max_trades_per_timeframe >= 1, "risk.frequency.max_trades_per_timeframe must be >= 1")
        _require(fq.timeframe_seconds >= 1, "risk.frequency.timeframe_seconds must be >= 1")
        for symbol in risk.blacklist:
            try:
                split_symbol(symbol)
            except ValueError:
                raise InvalidConfigError(
                    f"risk.blacklist entry '{symbol}' must end with USDT or USDC") from None
        return self


def _require(condition: bool, message: str):
    if not condition:
        raise InvalidConfigError(message)


# --- YAML READERS ---

def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise InvalidConfigError(f"'{key}' must be a mapping")
    return value


def _decimal(section: dict, key: str, default: Decimal, path: str) -> Decimal:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, (bool, list, dict)):
        raise InvalidConfigError(f"{path}.{key} must be a number, got {value!r}")
    try:
        result = to_decimal(value, fallback=default)
    except PrecisionError as e:
        raise InvalidConfigError(f"{path}.{key}: {e}") from None
    if result is default and str(value) != str(default):
        logger.warning(f"⚠️ [CONFIG] {path}.{key}={value!r} is out of range, using {default}")
    return result


def _int(section: dict, key: str, default: int, path: str) -> int:
    value = section.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidConfigError(f"{path}.{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{path}.{key} must be an integer, got {value!r}") from None


def _bool(section: dict, key: str, default: bool) -> bool:
    value = section.get(key, default)
    return default if value is None else bool(value)


def config_from_dict(raw: dict) -> AppConfig:
    """Builds a validated AppConfig from an already-parsed YAML document."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise InvalidConfigError("configuration root must be a mapping")

    arb_raw = _section(raw, "arbitrage")
    arbitrage = ArbitrageSettings(
        min_profit_percentage=_decimal(arb_raw, "min_profit_percentage", Decimal("0.1"), "arbitrage"),
        max_trade_amount_usdt=_decimal(arb_raw, "max_trade_amount_usdt", Decimal("100"), "arbitrage"),
        check_interval_ms=_int(arb_raw, "check_interval_ms", 1000, "arbitrage"),
        fallback_to_spot=_bool(arb_raw, "fallback_to_spot", True),
    )

    st_raw = _section(raw, "strategy")
    twap_raw = _section(st_raw, "twap")
    depth_raw = _section(st_raw, "depth")
    slip_raw = _section(st_raw, "slippage")
    trend_raw = _section(st_raw, "trend")
    enabled_strategies = parse_names(st_raw.get("enabled", ["simple"]), StrategyType, "strategy")
    strategy = StrategySettings(
        enabled=enabled_strategies,
        twap=TwapSettings(
            slices=_int(twap_raw, "slices", 5, "strategy.twap"),
            interval_seconds=_int(twap_raw, "interval_seconds", 60, "strategy.twap"),
        ),
        depth=DepthSettings(
            depth_levels=_int(depth_raw, "depth_levels", 20, "strategy.depth"),
            min_liquidity=_decimal(depth_raw, "min_liquidity", Decimal("1.0"), "strategy.depth"),
        ),
        slippage=SlippageSettings(
            max_slippage_pct=_decimal(slip_raw, "max_slippage_pct", Decimal("0.5"), "strategy.slippage"),
            volatility_window_size=_int(slip_raw, "volatility_window_size", 20, "strategy.slippage"),
        ),
        trend=TrendSettings(
            short_window=_int(trend_raw, "short_window", 10, "strategy.trend"),
            long_window=_int(trend_raw, "long_window", 30, "strategy.trend"),
            trend_threshold=_decimal(trend_raw, "trend_threshold", Decimal("1.0"), "strategy.trend"),
            adverse_trend_limit=_decimal(trend_raw, "adverse_trend_limit", Decimal("2.0"), "strategy.trend"),
        ),
    )

    risk_raw = _section(raw, "risk")
    daily_raw = _section(risk_raw, "daily_loss")
    abn_raw = _section(risk_raw, "abnormal_price")
    tw_raw = _section(risk_raw, "time_window")
    fq_raw = _section(risk_raw, "frequency")

    if "exposure" in risk_raw:
        exp_raw = _section(risk_raw, "exposure")
        exposure = {str(asset).upper(): _decimal(exp_raw, asset, Decimal("Infinity"), "risk.exposure")
                    for asset in exp_raw}
    else:
        exposure = RiskSettings().exposure

    blacklist = risk_raw.get("blacklist") or []
    if not isinstance(blacklist, list):
        raise InvalidConfigError("risk.blacklist must be a list of symbols")

    risk = RiskSettings(
        enabled=parse_names(risk_raw.get("enabled", ["loss-limit", "abnormal-price"]),
                            RiskControllerType, "risk controller"),
        daily_loss=DailyLossSettings(
            max_daily_loss=_decimal(daily_raw, "max_daily_loss", Decimal("50"), "risk.daily_loss"),
        ),
        abnormal_price=AbnormalPriceSettings(
            window_size=_int(abn_raw, "window_size", 30, "risk.abnormal_price"),
            abnormal_threshold=_decimal(abn_raw, "abnormal_threshold", Decimal("5.0"), "risk.abnormal_price"),
            cooldown_period=_int(abn_raw, "cooldown_period", 300, "risk.abnormal_price"),
        ),
        exposure=exposure,
        time_window=TimeWindowSettings(
            start_hour=_int(tw_raw, "start_hour", 0, "risk.time_window"),
            start_minute=_int(tw_raw, "start_minute", 0, "risk.time_window"),
            end_hour=_int(tw_raw, "end_hour", 23, "risk.time_window"),
            end_minute=_int(tw_raw, "end_minute", 59, "risk.time_window"),
            trade_on_weekends=_bool(tw_raw, "trade_on_weekends", True),
        ),
        frequency=FrequencySettings(
            min_interval_seconds=_int(fq_raw, "min_interval_seconds", 30, "risk.frequency"),
            max_trades_per_timeframe=_int(fq_raw, "max_trades_per_timeframe", 10, "risk.frequency"),
            timeframe_seconds=_int(fq_raw, "timeframe_seconds", 600, "risk.frequency"),
        ),
        blacklist=[str(s).strip().upper() for s in blacklist],
    )

    ex_raw = _section(raw, "exchange")
    exchange = ExchangeSettings(
        api_key=ex_raw.get("api_key"),
        secret=ex_raw.get("secret"),
        sandbox=_bool(ex_raw, "sandbox", False),
        timeout_ms=_int(ex_raw, "timeout_ms", 10000, "exchange"),
    )

    audit_raw = _section(raw, "audit")
    audit = AuditSettings(trade_log=audit_raw.get("trade_log", AuditSettings.trade_log))

    return AppConfig(arbitrage=arbitrage, strategy=strategy, risk=risk,
                     exchange=exchange, audit=audit).validate()


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Loads the YAML configuration file.
    Without a path the built-in defaults are used.
    """
    if path is None:
        logger.info("[CONFIG] No config file given, using defaults")
        return config_from_dict({})

    if not os.path.exists(path):
        raise InvalidConfigError(f"config file not found: {path}")

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"cannot parse {path}: {e}") from None

    config = config_from_dict(raw or {})
    logger.info(f"[CONFIG] Loaded {path}")
    return config
