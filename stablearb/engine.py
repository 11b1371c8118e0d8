# stablearb/engine.py
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .config import AppConfig
from .errors import ExchangeError
from .execution import ExecutionService
from .logger import ResultSink
from .market_engine import ExchangeClient
from .models import ZERO, ArbitrageOpportunity, ArbitrageResult, ArbitrageStatus, QuoteCurrency
from .risk_engine import RiskManager, build_risk_manager
from .strategy import Strategy, build_strategies, spot_opportunity


@dataclass(slots=True)
class EngineStats:
    ticks: int = 0
    opportunities: int = 0
    rejected: int = 0
    executed: int = 0
    failed: int = 0
    total_profit: Decimal = ZERO
    last_usdt_price: Optional[Decimal] = None
    last_usdc_price: Optional[Decimal] = None
    last_status: str = "WAITING"


class ArbitrageEngine:
    """
    One base asset, two stablecoin markets, one tick at a time:
    quote -> strategies -> risk -> two-leg execution -> record -> sleep.
    """
    def __init__(self, client: ExchangeClient, base_asset: str, strategies: List[Strategy],
                 risk_manager: RiskManager, execution: ExecutionService,
                 max_trade_amount: Decimal, check_interval_ms: int = 1000,
                 sink: Optional[ResultSink] = None, fallback_to_spot: bool = True,
                 logger: logging.Logger = None):
        self.client = client
        self.base_asset = base_asset.upper()
        self.usdt_symbol = QuoteCurrency.USDT.symbol(self.base_asset)
        self.usdc_symbol = QuoteCurrency.USDC.symbol(self.base_asset)
        self.strategies = strategies
        self.risk_manager = risk_manager
        self.execution = execution
        self.max_trade_amount = max_trade_amount
        self.check_interval_ms = check_interval_ms
        self.sink = sink
        self.fallback_to_spot = fallback_to_spot
        self.logger = logger or logging.getLogger("stablearb.engine")
        self.stats = EngineStats()
        self.running = False

    @classmethod
    def from_config(cls, config: AppConfig, client: ExchangeClient, base_asset: str,
                    sink: Optional[ResultSink] = None, logger: logging.Logger = None) -> "ArbitrageEngine":
        logger = logger or logging.getLogger("stablearb.engine")
        arb = config.arbitrage
        return cls(
            client=client,
            base_asset=base_asset,
            strategies=build_strategies(config, client),
            risk_manager=build_risk_manager(config, client, base_asset.upper()),
            execution=ExecutionService(client, logger),
            max_trade_amount=arb.max_trade_amount_usdt,
            check_interval_ms=arb.check_interval_ms,
            sink=sink,
            fallback_to_spot=arb.fallback_to_spot,
            logger=logger,
        )

    async def find_best_opportunity(self, usdt_price: Decimal,
                                    usdc_price: Decimal) -> Optional[ArbitrageOpportunity]:
        best: Optional[ArbitrageOpportunity] = None
        for strategy in self.strategies:
            try:
                opp = await strategy.find_opportunity(self.base_asset, usdt_price, usdc_price)
                if opp is None:
                    continue
                if not await strategy.validate(opp):
                    self.logger.debug(f"{strategy.name}: {opp.profit_percentage:.4f}% below threshold")
                    continue
            except Exception as e:
                self.logger.warning(f"⚠️ Strategy {strategy.name} failed: {e!r}")
                continue

            self.logger.info(f"✨ FOUND [{strategy.name}]: Buy {opp.buy_quote.value} @ {opp.buy_price} | "
                             f"Sell {opp.sell_quote.value} @ {opp.sell_price} | {opp.profit_percentage:.4f}%")
            if best is None or opp.profit_percentage > best.profit_percentage:
                best = opp

        if best is None and self.fallback_to_spot:
            best = spot_opportunity(self.base_asset, usdt_price, usdc_price, self.max_trade_amount)
            self.logger.debug(f"No strategy accepted, falling back to spot ({best.profit_percentage:.4f}%)")
        return best

    async def tick(self) -> Optional[ArbitrageResult]:
        self.stats.ticks += 1
        try:
            usdt = await self.client.get_price(self.usdt_symbol)
            usdc = await self.client.get_price(self.usdc_symbol)
        except ExchangeError as e:
            self.logger.warning(f"⚠️ Price fetch failed, skipping tick: {e}")
            return None
        self.stats.last_usdt_price = usdt.price
        self.stats.last_usdc_price = usdc.price

        opportunity = await self.find_best_opportunity(usdt.price, usdc.price)
        if opportunity is None:
            return None
        self.stats.opportunities += 1

        allowed, reasons = await self.risk_manager.validate_opportunity(opportunity)
        if not allowed:
            self.stats.rejected += 1
            self.stats.last_status = "REJECTED"
            for reason in reasons:
                self.logger.warning(f"⛔ REJECTED: {reason}")
            return None

        result = await self.execution.execute(opportunity)
        if result.status is ArbitrageStatus.COMPLETED:
            self.stats.executed += 1
            self.stats.total_profit += result.profit
        else:
            self.stats.failed += 1
        self.stats.last_status = result.status.value

        await self.risk_manager.record_result(result)
        await self._emit(result)
        return result

    async def _emit(self, result: ArbitrageResult):
        if self.sink is None:
            return
        try:
            record_id = await self.sink.record(result)
            self.logger.debug(f"Result stored as #{record_id}")
        except Exception as e:
            self.logger.error(f"❌ Could not record result: {e!r}")

    async def run(self):
        """Ticks until stop() is called or the task is cancelled."""
        self.running = True
        self.logger.info(f"🚀 Arbitrage engine started for {self.base_asset} "
                         f"({', '.join(s.name for s in self.strategies)} | "
                         f"risk: {', '.join(self.risk_manager.controller_names) or 'none'})")
        try:
            while self.running:
                try:
                    await self.tick()
                except Exception as e:
                    self.logger.error(f"❌ Engine fault during tick: {e!r}")
                await asyncio.sleep(self.check_interval_ms / 1000)
        finally:
            self.running = False
            self.logger.info("Arbitrage engine stopped")

    def stop(self):
        self.running = False
