# stablearb/models.py
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Tuple

from .errors import PrecisionError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value, fallback: Optional[Decimal] = None) -> Decimal:
    """
    Explicit conversion into Decimal.
    Floats go through their shortest repr so 0.1 stays 0.1.
    Non-finite or unparsable input returns `fallback` when one is given,
    otherwise raises PrecisionError.
    """
    if isinstance(value, bool):
        raise PrecisionError(f"refusing to convert boolean {value!r} to Decimal")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            if fallback is not None:
                return fallback
            raise PrecisionError(f"cannot parse {value!r} as a decimal") from None
    else:
        raise PrecisionError(f"unsupported numeric type {type(value).__name__}")

    if not result.is_finite():
        if fallback is not None:
            return fallback
        raise PrecisionError(f"non-finite value {value!r}")
    return result


class QuoteCurrency(Enum):
    USDT = "USDT"
    USDC = "USDC"

    def symbol(self, base_asset: str) -> str:
        return f"{base_asset}{self.value}"

    @property
    def other(self) -> "QuoteCurrency":
        return QuoteCurrency.USDC if self is QuoteCurrency.USDT else QuoteCurrency.USDT


def split_symbol(symbol: str) -> Tuple[str, QuoteCurrency]:
    """'BTCUSDT' -> ('BTC', QuoteCurrency.USDT). Case-insensitive."""
    symbol = symbol.upper()
    for quote in QuoteCurrency:
        if symbol.endswith(quote.value) and len(symbol) > len(quote.value):
            return symbol[: -len(quote.value)], quote
    raise ValueError(f"symbol {symbol!r} is not quoted in USDT or USDC")


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED,
                        OrderStatus.REJECTED, OrderStatus.EXPIRED)


class ArbitrageStatus(Enum):
    """
    Lifecycle of a two-leg trade.
    Failed is reachable from every non-terminal state.
    """
    IDENTIFIED = "IDENTIFIED"
    BUY_ORDER_PLACED = "BUY_ORDER_PLACED"
    BUY_ORDER_FILLED = "BUY_ORDER_FILLED"
    SELL_ORDER_PLACED = "SELL_ORDER_PLACED"
    SELL_ORDER_FILLED = "SELL_ORDER_FILLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ArbitrageStatus.COMPLETED, ArbitrageStatus.FAILED)


@dataclass(slots=True)
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    min_notional: Decimal
    min_qty: Decimal
    step_size: Decimal
    tick_size: Decimal


@dataclass(slots=True)
class Price:
    symbol: str
    price: Decimal
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class OrderBook:
    """Bids descending by price, asks ascending."""
    symbol: str
    bids: List[Tuple[Decimal, Decimal]]
    asks: List[Tuple[Decimal, Decimal]]
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class OrderInfo:
    order_id: int
    symbol: str
    price: Decimal
    quantity: Decimal
    side: Side
    status: OrderStatus
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ArbitrageOpportunity:
    """
    A priced cross-quote spread for one base asset.
    Use `create` so that price_diff and profit_percentage stay consistent.
    """
    base_asset: str
    buy_quote: QuoteCurrency
    sell_quote: QuoteCurrency
    buy_price: Decimal
    sell_price: Decimal
    price_diff: Decimal
    profit_percentage: Decimal
    max_trade_amount: Decimal
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.buy_quote == self.sell_quote:
            raise ValueError("buy and sell legs must use different quote currencies")

    @classmethod
    def create(cls, base_asset: str, buy_quote: QuoteCurrency, sell_quote: QuoteCurrency,
               buy_price: Decimal, sell_price: Decimal,
               max_trade_amount: Decimal) -> "ArbitrageOpportunity":
        price_diff = sell_price - buy_price
        if buy_price == ZERO:
            profit_pct = ZERO
        else:
            profit_pct = price_diff / buy_price * HUNDRED
        return cls(base_asset=base_asset, buy_quote=buy_quote, sell_quote=sell_quote,
                   buy_price=buy_price, sell_price=sell_price, price_diff=price_diff,
                   profit_percentage=profit_pct, max_trade_amount=max_trade_amount)

    def reprice(self, buy_price: Decimal, sell_price: Decimal) -> "ArbitrageOpportunity":
        price_diff = sell_price - buy_price
        profit_pct = ZERO if buy_price == ZERO else price_diff / buy_price * HUNDRED
        return replace(self, buy_price=buy_price, sell_price=sell_price,
                       price_diff=price_diff, profit_percentage=profit_pct)

    @property
    def buy_symbol(self) -> str:
        return self.buy_quote.symbol(self.base_asset)

    @property
    def sell_symbol(self) -> str:
        return self.sell_quote.symbol(self.base_asset)


RESULT_FIELDS = [
    "id", "base_asset", "buy_quote", "sell_quote", "buy_price", "sell_price",
    "trade_amount", "profit", "profit_percentage", "buy_order_id", "sell_order_id",
    "status", "start_time", "end_time", "duration_ms",
]


@dataclass(slots=True)
class ArbitrageResult:
    base_asset: str
    buy_quote: str
    sell_quote: str
    buy_price: Decimal
    sell_price: Decimal
    trade_amount: Decimal
    profit: Decimal
    profit_percentage: Decimal
    buy_order_id: Optional[int] = None
    sell_order_id: Optional[int] = None
    status: ArbitrageStatus = ArbitrageStatus.IDENTIFIED
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    @classmethod
    def from_opportunity(cls, opp: ArbitrageOpportunity) -> "ArbitrageResult":
        return cls(base_asset=opp.base_asset,
                   buy_quote=opp.buy_quote.value, sell_quote=opp.sell_quote.value,
                   buy_price=opp.buy_price, sell_price=opp.sell_price,
                   trade_amount=ZERO, profit=ZERO,
                   profit_percentage=opp.profit_percentage)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    @property
    def volume(self) -> Decimal:
        return self.trade_amount * self.buy_price

    def to_record(self, record_id: int) -> list:
        """Row in RESULT_FIELDS order."""
        return [
            record_id, self.base_asset, self.buy_quote, self.sell_quote,
            str(self.buy_price), str(self.sell_price), str(self.trade_amount),
            str(self.profit), str(self.profit_percentage),
            "" if self.buy_order_id is None else self.buy_order_id,
            "" if self.sell_order_id is None else self.sell_order_id,
            self.status.value, self.start_time.isoformat(),
            "" if self.end_time is None else self.end_time.isoformat(),
            "" if self.duration_ms is None else self.duration_ms,
        ]

    @classmethod
    def from_record(cls, row: dict) -> "ArbitrageResult":
        def optional_int(value):
            return int(value) if value not in (None, "") else None

        end_time = row.get("end_time") or None
        return cls(
            base_asset=row["base_asset"],
            buy_quote=row["buy_quote"],
            sell_quote=row["sell_quote"],
            buy_price=to_decimal(row["buy_price"]),
            sell_price=to_decimal(row["sell_price"]),
            trade_amount=to_decimal(row["trade_amount"]),
            profit=to_decimal(row["profit"]),
            profit_percentage=to_decimal(row["profit_percentage"]),
            buy_order_id=optional_int(row.get("buy_order_id")),
            sell_order_id=optional_int(row.get("sell_order_id")),
            status=ArbitrageStatus(row["status"]),
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
        )
