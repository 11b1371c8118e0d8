# stablearb/market_engine.py
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import ccxt.async_support as ccxt

from .errors import ExchangeError, InsufficientBalanceError, ProtocolError, TransportError
from .models import (OrderBook, OrderInfo, OrderStatus, Price, Side, SymbolInfo,
                     split_symbol, to_decimal, utcnow)


class ExchangeClient(ABC):
    """
    Venue operations used by the engine, strategies and risk controllers.
    Every method raises ExchangeError (or a subclass) on failure.
    """

    @abstractmethod
    async def get_symbol_info(self, symbol: str) -> SymbolInfo: ...

    @abstractmethod
    async def get_price(self, symbol: str) -> Price: ...

    @abstractmethod
    async def get_order_book(self, symbol: str, depth: int) -> OrderBook: ...

    @abstractmethod
    async def place_order(self, symbol: str, side: Side, quantity: Decimal,
                          price: Optional[Decimal] = None) -> OrderInfo:
        """No price means a market order; otherwise a good-till-cancel limit order."""

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: int) -> OrderInfo: ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: int) -> OrderInfo: ...

    @abstractmethod
    async def get_account_balance(self, asset: str) -> Decimal:
        """A missing asset resolves to zero."""

    async def close(self):
        pass


_CCXT_STATUS = {
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "expired": OrderStatus.EXPIRED,
}


def to_ccxt_symbol(symbol: str) -> str:
    try:
        base, quote = split_symbol(symbol)
    except ValueError as e:
        raise ExchangeError(str(e)) from None
    return f"{base}/{quote.value}"


def _ms_to_datetime(ms) -> datetime:
    if not ms:
        return utcnow()
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


@contextmanager
def _translate_errors(action: str):
    """Maps ccxt's exception tree onto ours."""
    try:
        yield
    except ccxt.InsufficientFunds as e:
        raise InsufficientBalanceError(f"{action}: {e}") from e
    except ccxt.NetworkError as e:
        raise TransportError(f"{action}: {e}") from e
    except ccxt.BadResponse as e:
        raise ProtocolError(f"{action}: {e}") from e
    except ccxt.BaseError as e:
        raise ExchangeError(f"{action}: {e}") from e
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"{action}: unexpected response ({e})") from e


class CcxtExchangeClient(ExchangeClient):
    """
    Binance spot through ccxt's async client.
    Responsible for the connection diagnostic and for translating
    ccxt payloads into our models.
    """
    def __init__(self, api_key: Optional[str], secret: Optional[str], logger,
                 sandbox: bool = False, timeout_ms: int = 10000, exchange_id: str = "binance"):
        self.logger = logger
        self.exchange_id = exchange_id
        ex_class = getattr(ccxt, exchange_id)
        self.client = ex_class({
            'apiKey': api_key or '',
            'secret': secret or '',
            'timeout': timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'}
        })
        if sandbox:
            self.client.set_sandbox_mode(True)

    async def initialize(self) -> bool:
        """
        Loads markets and probes the private API.
        Returns False when the venue or the credentials fail the diagnostic.
        """
        name = self.exchange_id.upper()
        self.logger.info("📡 TESTING EXCHANGE CONNECTION...")
        try:
            # public API: connectivity and exchange status
            await self.client.load_markets()
            # private API: key validity and permissions
            await self.client.fetch_balance({'type': 'spot'})
            self.logger.info(f"   ✅ {name:<10} | Auth: OK")
            return True
        except ccxt.AuthenticationError:
            self.logger.critical(f"   ❌ {name:<10} | AUTH FAILED: Invalid API Key or Secret.")
        except ccxt.PermissionDenied:
            self.logger.critical(f"   ❌ {name:<10} | PERMISSION DENIED: Key missing 'Spot Trading' or 'IP Whitelist' permissions.")
        except ccxt.AccountSuspended:
            self.logger.critical(f"   ❌ {name:<10} | ACCOUNT SUSPENDED: Contact support immediately.")
        except ccxt.RequestTimeout:
            self.logger.error(f"   ❌ {name:<10} | TIMEOUT: Exchange API is slow or down.")
        except ccxt.ExchangeNotAvailable:
            self.logger.error(f"   ❌ {name:<10} | MAINTENANCE: Exchange is currently offline.")
        except ccxt.BaseError as e:
            self.logger.critical(f"   ❌ {name:<10} | UNKNOWN ERROR: {e}")
        return False

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        with _translate_errors(f"symbol info {symbol}"):
            if not self.client.markets:
                await self.client.load_markets()
            market = self.client.market(to_ccxt_symbol(symbol))
            limits = market.get('limits') or {}
            precision = market.get('precision') or {}
            return SymbolInfo(
                symbol=symbol,
                base_asset=market['base'],
                quote_asset=market['quote'],
                min_notional=to_decimal((limits.get('cost') or {}).get('min') or 0),
                min_qty=to_decimal((limits.get('amount') or {}).get('min') or 0),
                step_size=to_decimal(precision.get('amount') or 0),
                tick_size=to_decimal(precision.get('price') or 0),
            )

    async def get_price(self, symbol: str) -> Price:
        with _translate_errors(f"price {symbol}"):
            ticker = await self.client.fetch_ticker(to_ccxt_symbol(symbol))
            last = ticker.get('last') or ticker.get('close')
            if last is None:
                raise ProtocolError(f"price {symbol}: ticker carries no last price")
            return Price(symbol=symbol, price=to_decimal(last),
                         timestamp=_ms_to_datetime(ticker.get('timestamp')))

    async def get_order_book(self, symbol: str, depth: int) -> OrderBook:
        with _translate_errors(f"order book {symbol}"):
            book = await self.client.fetch_order_book(to_ccxt_symbol(symbol), limit=depth)
            return OrderBook(
                symbol=symbol,
                bids=[(to_decimal(p), to_decimal(q)) for p, q, *_ in book['bids'][:depth]],
                asks=[(to_decimal(p), to_decimal(q)) for p, q, *_ in book['asks'][:depth]],
                timestamp=_ms_to_datetime(book.get('timestamp')),
            )

    async def place_order(self, symbol: str, side: Side, quantity: Decimal,
                          price: Optional[Decimal] = None) -> OrderInfo:
        market_symbol = to_ccxt_symbol(symbol)
        with _translate_errors(f"place {side.value} {symbol}"):
            amount = float(self.client.amount_to_precision(market_symbol, float(quantity)))
            if price is None:
                order = await self.client.create_order(market_symbol, 'market', side.value.lower(), amount)
            else:
                order = await self.client.create_order(market_symbol, 'limit', side.value.lower(), amount,
                                                       float(price), {'timeInForce': 'GTC'})
            return self._parse_order(symbol, order)

    async def get_order_status(self, symbol: str, order_id: int) -> OrderInfo:
        with _translate_errors(f"order status {symbol}#{order_id}"):
            order = await self.client.fetch_order(str(order_id), to_ccxt_symbol(symbol))
            return self._parse_order(symbol, order)

    async def cancel_order(self, symbol: str, order_id: int) -> OrderInfo:
        with _translate_errors(f"cancel {symbol}#{order_id}"):
            order = await self.client.cancel_order(str(order_id), to_ccxt_symbol(symbol))
            return self._parse_order(symbol, order)

    async def get_account_balance(self, asset: str) -> Decimal:
        with _translate_errors(f"balance {asset}"):
            balance = await self.client.fetch_balance({'type': 'spot'})
            free = (balance.get('free') or {}).get(asset)
            return to_decimal(free or 0)

    async def close(self):
        """Gracefully closes the REST session."""
        await self.client.close()

    @staticmethod
    def _parse_order(symbol: str, order: dict) -> OrderInfo:
        raw_status = (order.get('status') or 'open').lower()
        filled = order.get('filled') or 0
        if raw_status == 'open':
            status = OrderStatus.PARTIALLY_FILLED if filled else OrderStatus.NEW
        else:
            status = _CCXT_STATUS.get(raw_status)
            if status is None:
                raise ProtocolError(f"unknown order status '{raw_status}'")
        fill_price = order.get('average') or order.get('price') or 0
        return OrderInfo(
            order_id=int(order['id']),
            symbol=symbol,
            price=to_decimal(fill_price),
            quantity=to_decimal(order.get('amount') or filled or 0),
            side=Side(str(order.get('side', 'buy')).upper()),
            status=status,
            timestamp=_ms_to_datetime(order.get('timestamp')),
        )
