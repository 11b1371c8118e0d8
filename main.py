# main.py
import argparse
import asyncio
import sys
from datetime import date, datetime
from decimal import Decimal

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from stablearb.analytics import TimeRange, TradeHistory, build_report, export_report, render_report
from stablearb.config import AppConfig, RiskControllerType, StrategyType, load_config, parse_names
from stablearb.engine import ArbitrageEngine, EngineStats
from stablearb.errors import ArbitrageError, InvalidConfigError
from stablearb.logger import CsvResultSink, setup_console_logger, sink_path_from_url
from stablearb.market_engine import CcxtExchangeClient
from stablearb.models import to_decimal
from stablearb.simulated_exchange import DEFAULT_PRICES, PriceSimulator, SimulatedExchange

try:
    import uvloop
except ImportError:
    uvloop = None

# --- UI HELPER FUNCTIONS ---

def startup_selection(config: AppConfig):
    """Interactive CLI to pick strategies and risk controllers."""
    print("\n🚀 STABLECOIN ARB COMMAND \n")
    strategies = questionary.checkbox(
        "Select Strategies:",
        choices=[questionary.Choice(s.value, checked=s in config.strategy.enabled) for s in StrategyType],
    ).ask()
    if not strategies:
        print("No strategy selected. Exiting.")
        sys.exit()

    controllers = questionary.checkbox(
        "Select Risk Controllers:",
        choices=[questionary.Choice(c.value, checked=c in config.risk.enabled) for c in RiskControllerType],
    ).ask()
    if controllers is None:
        sys.exit()
    config.strategy.enabled = parse_names(strategies, StrategyType, "strategy")
    config.risk.enabled = parse_names(controllers, RiskControllerType, "risk controller")


def generate_dashboard(stats: EngineStats, base_asset: str):
    """Live engine counters and the latest quotes."""
    price_table = Table(title="📡 Live Market Feed")
    price_table.add_column("Market", style="cyan")
    price_table.add_column("Price", justify="right", style="green")
    for quote, price in (("USDT", stats.last_usdt_price), ("USDC", stats.last_usdc_price)):
        price_table.add_row(f"{base_asset}/{quote}", "-" if price is None else f"{price:,.2f}")

    stats_table = Table(title="📊 Engine")
    stats_table.add_column("Counter", style="magenta")
    stats_table.add_column("Value", justify="right")
    stats_table.add_row("Ticks", str(stats.ticks))
    stats_table.add_row("Opportunities", str(stats.opportunities))
    stats_table.add_row("Rejected by risk", str(stats.rejected))
    stats_table.add_row("Executed", str(stats.executed))
    stats_table.add_row("Failed", str(stats.failed))
    stats_table.add_row("Last status", stats.last_status)

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(price_table)),
        Layout(Panel(stats_table))
    )
    footer = Panel(f"[bold gold1]CUMULATIVE PROFIT: {stats.total_profit:,.4f}[/bold gold1]", style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

class ArbitrageBot:
    def __init__(self, args, config: AppConfig):
        self.args = args
        self.config = config
        self.base_asset = args.base_asset.upper()
        self.logger = setup_console_logger("stablearb", "ERROR" if args.dashboard else args.log_level)

        trade_log = sink_path_from_url(args.db_url) if args.db_url else config.audit.trade_log
        self.sink = CsvResultSink(trade_log, self.logger) if trade_log else None
        self.client = None
        self.simulator = None

    async def _build_client(self):
        if self.args.command == "live":
            ex = self.config.exchange
            client = CcxtExchangeClient(ex.api_key, ex.secret, self.logger,
                                        sandbox=ex.sandbox or self.args.sandbox, timeout_ms=ex.timeout_ms)
            if not await client.initialize():
                await client.close()
                return None
            return client

        client = SimulatedExchange()
        if f"{self.base_asset}USDT" not in DEFAULT_PRICES:
            client.seed_market(self.base_asset, Decimal("100"), Decimal("100.05"), Decimal("100"))
        self.simulator = PriceSimulator(client, self.base_asset, self.args.volatility,
                                        self.args.opportunity_probability)
        return client

    async def _drive(self, engine: ArbitrageEngine):
        if not self.args.dashboard:
            await engine.run()
            return
        runner = asyncio.create_task(engine.run())
        try:
            with Live(console=Console(), refresh_per_second=4) as live:
                while not runner.done():
                    live.update(generate_dashboard(engine.stats, self.base_asset))
                    await asyncio.sleep(0.25)
            await runner
        finally:
            if not runner.done():
                runner.cancel()

    async def run(self):
        sim_task = None
        try:
            self.client = await self._build_client()
            if self.client is None:
                print("❌ Diagnostic Failed. Check API Keys.")
                return
            if self.sink is not None:
                await self.sink.start()

            engine = ArbitrageEngine.from_config(self.config, self.client, self.base_asset,
                                                 sink=self.sink, logger=self.logger)
            if self.simulator is None:
                await self._drive(engine)
                return

            sim_task = asyncio.create_task(self.simulator.run())
            try:
                await asyncio.wait_for(self._drive(engine), timeout=self.args.runtime)
            except asyncio.TimeoutError:
                self.logger.info(f"⏱️ Simulation finished after {self.args.runtime}s")
            s = engine.stats
            print(f"\nSimulation summary: {s.ticks} ticks | {s.executed} executed | "
                  f"{s.failed} failed | {s.rejected} rejected | profit {s.total_profit:.4f}")
        finally:
            print("Shutting down resources...")
            if sim_task is not None:
                self.simulator.stop()
                sim_task.cancel()
            if self.sink is not None:
                await self.sink.close()
            if self.client is not None:
                await self.client.close()


async def run_analytics(args, config: AppConfig):
    setup_console_logger("stablearb", args.log_level)
    trade_log = sink_path_from_url(args.db_url) if args.db_url else config.audit.trade_log
    if not trade_log:
        raise InvalidConfigError("analytics needs --db-url or audit.trade_log")

    results = await TradeHistory(trade_log).load()
    report = build_report(results, TimeRange(args.time_range), args.start_date, args.end_date,
                          top_assets=args.top_assets)
    render_report(report)
    await export_report(report, args.export_format, args.export_path)

# --- CLI ---

def _date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a YYYY-MM-DD date") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stablearb", description="USDT/USDC cross-quote arbitrage bot")
    parser.add_argument("--config-file", help="YAML configuration file")
    parser.add_argument("--log-level", default="info", choices=["trace", "debug", "info", "warn", "error"])
    parser.add_argument("--base-asset", default="BTC", help="asset traded against USDT and USDC")
    parser.add_argument("--db-url", help="trade log location (CSV path or file:// URL)")
    parser.add_argument("--strategies", help="comma list: " + ",".join(s.value for s in StrategyType))
    parser.add_argument("--risk-controllers", help="comma list: " + ",".join(c.value for c in RiskControllerType))
    parser.add_argument("--interactive", action="store_true", help="pick strategies and controllers at startup")
    parser.add_argument("--dashboard", action="store_true", help="show the live dashboard instead of logs")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_trading_flags(p):
        p.add_argument("--min-profit", type=float, default=None, help="minimum profit percent (default 0.1)")
        p.add_argument("--max-amount", type=float, default=None, help="max trade size in quote (default 100)")
        p.add_argument("--interval", type=int, default=None, help="check interval in ms (default 1000)")

    live = sub.add_parser("live", help="trade on the real exchange")
    add_trading_flags(live)
    live.add_argument("--sandbox", action="store_true", help="use the exchange testnet")

    sim = sub.add_parser("simulate", help="trade against an in-memory exchange")
    add_trading_flags(sim)
    sim.add_argument("--runtime", type=int, default=60, help="seconds to run")
    sim.add_argument("--volatility", type=float, default=1.0, help="random walk volatility percent")
    sim.add_argument("--opportunity-probability", type=float, default=30.0,
                     help="percent chance per step of opening a spread")

    an = sub.add_parser("analytics", help="report on recorded trades")
    an.add_argument("--time-range", default="last7days", choices=[t.value for t in TimeRange])
    an.add_argument("--start-date", type=_date)
    an.add_argument("--end-date", type=_date)
    an.add_argument("--export-format", default="json", choices=["json", "csv"])
    an.add_argument("--export-path", default="./reports")
    an.add_argument("--top-assets", type=int, default=10)
    return parser


def apply_overrides(args, config: AppConfig) -> AppConfig:
    """CLI flags win over the config file."""
    if getattr(args, "min_profit", None) is not None:
        config.arbitrage.min_profit_percentage = to_decimal(args.min_profit)
    if getattr(args, "max_amount", None) is not None:
        config.arbitrage.max_trade_amount_usdt = to_decimal(args.max_amount)
    if getattr(args, "interval", None) is not None:
        config.arbitrage.check_interval_ms = args.interval
    if args.strategies:
        config.strategy.enabled = parse_names(args.strategies, StrategyType, "strategy")
    if args.risk_controllers:
        config.risk.enabled = parse_names(args.risk_controllers, RiskControllerType, "risk controller")
    return config.validate()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "analytics" and args.time_range == "custom" and not (args.start_date and args.end_date):
        parser.error("--time-range custom needs --start-date and --end-date")

    try:
        config = apply_overrides(args, load_config(args.config_file))
    except InvalidConfigError as e:
        parser.error(str(e))

    if args.command == "analytics":
        coro = run_analytics(args, config)
    else:
        if args.interactive:
            startup_selection(config)
        coro = ArbitrageBot(args, config).run()

    try:
        if uvloop is not None:
            uvloop.run(coro)
        else:
            asyncio.run(coro)
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
    except ArbitrageError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
