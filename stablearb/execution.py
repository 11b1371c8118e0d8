# stablearb/execution.py
import asyncio
import logging

from .errors import ArbitrageError, OrderTimeoutError
from .market_engine import ExchangeClient
from .models import (ZERO, ArbitrageOpportunity, ArbitrageResult, ArbitrageStatus,
                     OrderInfo, OrderStatus, Side, utcnow)


class ExecutionService:
    """
    Runs the two legs of an arbitrage one after the other:
    market buy on the cheap quote, then market sell of the same base
    quantity on the dear one.

    Each leg is polled until filled; a leg that does not fill within the
    polling budget is cancelled and the whole trade ends as FAILED.
    execute() never raises for exchange errors, it returns the FAILED result.
    """
    def __init__(self, client: ExchangeClient, logger: logging.Logger = None,
                 poll_interval: float = 1.0, max_polls: int = 10):
        self.client = client
        self.logger = logger or logging.getLogger("stablearb.execution")
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def execute(self, opp: ArbitrageOpportunity) -> ArbitrageResult:
        result = ArbitrageResult.from_opportunity(opp)
        trade_base = opp.max_trade_amount / opp.buy_price if opp.buy_price > ZERO else ZERO

        self.logger.info(f"⚡ EXECUTION TRIGGERED: {opp.base_asset} | Buy {opp.buy_symbol} @ {opp.buy_price} "
                         f"-> Sell {opp.sell_symbol} @ {opp.sell_price} | Qty: {trade_base}")

        try:
            if trade_base <= ZERO:
                raise ArbitrageError(f"cannot size trade at buy price {opp.buy_price}")

            buy_order = await self.client.place_order(opp.buy_symbol, Side.BUY, trade_base)
            result.buy_order_id = buy_order.order_id
            result.status = ArbitrageStatus.BUY_ORDER_PLACED
            buy_fill = await self._await_fill(buy_order)
            result.status = ArbitrageStatus.BUY_ORDER_FILLED

            sell_order = await self.client.place_order(opp.sell_symbol, Side.SELL, trade_base)
            result.sell_order_id = sell_order.order_id
            result.status = ArbitrageStatus.SELL_ORDER_PLACED
            sell_fill = await self._await_fill(sell_order)
            result.status = ArbitrageStatus.SELL_ORDER_FILLED
        except ArbitrageError as e:
            return self._fail(result, e)

        result.trade_amount = trade_base
        result.buy_price = buy_fill.price
        result.sell_price = sell_fill.price
        result.profit = trade_base * (sell_fill.price - buy_fill.price)
        result.status = ArbitrageStatus.COMPLETED
        result.end_time = utcnow()
        self.logger.info(f"✅ SUCCESS: BuyID: {result.buy_order_id} | SellID: {result.sell_order_id} "
                         f"| Profit: {result.profit} {opp.sell_quote.value}")
        return result

    async def _await_fill(self, order: OrderInfo) -> OrderInfo:
        current = order
        polls = 0
        while current.status is not OrderStatus.FILLED and polls < self.max_polls:
            if current.status.is_terminal:
                raise ArbitrageError(f"order {order.order_id} on {order.symbol} ended {current.status.value}")
            await asyncio.sleep(self.poll_interval)
            current = await self.client.get_order_status(order.symbol, order.order_id)
            polls += 1

        if current.status is OrderStatus.FILLED:
            return current
        if current.status.is_terminal:
            raise ArbitrageError(f"order {order.order_id} on {order.symbol} ended {current.status.value}")

        self.logger.warning(f"⚠️ Order {order.order_id} on {order.symbol} not filled after "
                            f"{self.max_polls} polls, cancelling")
        try:
            await self.client.cancel_order(order.symbol, order.order_id)
        except ArbitrageError as e:
            self.logger.error(f"Could not cancel order {order.order_id} on {order.symbol}: {e}")
        raise OrderTimeoutError(f"order {order.order_id} on {order.symbol} not filled in time")

    def _fail(self, result: ArbitrageResult, error: Exception) -> ArbitrageResult:
        self.logger.warning(f"⚠️ FAILED at {result.status.value}: {error}")
        result.trade_amount = ZERO
        result.profit = ZERO
        result.profit_percentage = ZERO
        result.status = ArbitrageStatus.FAILED
        result.end_time = utcnow()
        return result
