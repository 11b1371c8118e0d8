# stablearb/analytics.py
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

import aiofiles
from aiocsv import AsyncDictReader, AsyncWriter
from rich.console import Console
from rich.table import Table

from .errors import InvalidConfigError, SinkError
from .models import ZERO, ArbitrageResult, ArbitrageStatus

logger = logging.getLogger(__name__)


class TimeRange(Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "last7days"
    LAST_30_DAYS = "last30days"
    THIS_MONTH = "thismonth"
    LAST_MONTH = "lastmonth"
    ALL_TIME = "alltime"
    CUSTOM = "custom"


def resolve_range(time_range: TimeRange, today: date,
                  start: Optional[date] = None, end: Optional[date] = None) -> Tuple[Optional[date], Optional[date]]:
    """Inclusive local-date bounds; None means unbounded."""
    if time_range is TimeRange.TODAY:
        return today, today
    if time_range is TimeRange.YESTERDAY:
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if time_range is TimeRange.LAST_7_DAYS:
        return today - timedelta(days=6), today
    if time_range is TimeRange.LAST_30_DAYS:
        return today - timedelta(days=29), today
    if time_range is TimeRange.THIS_MONTH:
        return today.replace(day=1), today
    if time_range is TimeRange.LAST_MONTH:
        last_of_prev = today.replace(day=1) - timedelta(days=1)
        return last_of_prev.replace(day=1), last_of_prev
    if time_range is TimeRange.ALL_TIME:
        return None, None
    if start is None or end is None:
        raise InvalidConfigError("custom time range needs both a start and an end date")
    if start > end:
        raise InvalidConfigError(f"start date {start} is after end date {end}")
    return start, end


@dataclass
class TradeStats:
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_profit: Decimal = ZERO
    total_volume: Decimal = ZERO
    avg_profit: Decimal = ZERO
    max_profit: Decimal = ZERO
    max_loss: Decimal = ZERO
    avg_duration_ms: Decimal = ZERO


@dataclass
class DailyStats:
    day: date
    stats: TradeStats


@dataclass
class AssetStats:
    asset: str
    stats: TradeStats


@dataclass
class AnalyticsReport:
    time_range: str
    start_date: Optional[date]
    end_date: Optional[date]
    overview: TradeStats
    daily_stats: List[DailyStats] = field(default_factory=list)
    asset_stats: List[AssetStats] = field(default_factory=list)
    success_rate: Decimal = ZERO
    profit_loss_ratio: Decimal = ZERO
    avg_daily_volume: Decimal = ZERO
    avg_daily_profit: Decimal = ZERO
    best_day: Optional[DailyStats] = None
    worst_day: Optional[DailyStats] = None


def summarize(results: List[ArbitrageResult]) -> TradeStats:
    stats = TradeStats(total_trades=len(results))
    if not results:
        return stats

    stats.max_profit = max(r.profit for r in results)
    stats.max_loss = min(r.profit for r in results)
    durations = []
    for r in results:
        if r.status is ArbitrageStatus.COMPLETED:
            stats.successful_trades += 1
        elif r.status is ArbitrageStatus.FAILED:
            stats.failed_trades += 1
        stats.total_profit += r.profit
        stats.total_volume += r.volume
        if r.duration_ms is not None:
            durations.append(r.duration_ms)

    stats.avg_profit = stats.total_profit / len(results)
    if durations:
        stats.avg_duration_ms = Decimal(sum(durations)) / len(durations)
    return stats


def _local_day(result: ArbitrageResult) -> date:
    return result.start_time.astimezone().date()


def build_report(results: List[ArbitrageResult], time_range: TimeRange = TimeRange.ALL_TIME,
                 start: Optional[date] = None, end: Optional[date] = None,
                 top_assets: int = 10, today: Optional[date] = None) -> AnalyticsReport:
    first, last = resolve_range(time_range, today or date.today(), start, end)
    selected = [r for r in results
                if (first is None or _local_day(r) >= first) and (last is None or _local_day(r) <= last)]

    overview = summarize(selected)

    by_day: Dict[date, List[ArbitrageResult]] = {}
    by_asset: Dict[str, List[ArbitrageResult]] = {}
    for r in selected:
        by_day.setdefault(_local_day(r), []).append(r)
        by_asset.setdefault(r.base_asset, []).append(r)

    daily = [DailyStats(day, summarize(rs)) for day, rs in sorted(by_day.items())]
    assets = sorted((AssetStats(asset, summarize(rs)) for asset, rs in by_asset.items()),
                    key=lambda a: a.stats.total_profit, reverse=True)[:top_assets]

    report = AnalyticsReport(time_range=time_range.value, start_date=first, end_date=last,
                             overview=overview, daily_stats=daily, asset_stats=assets)
    if overview.total_trades:
        report.success_rate = Decimal(overview.successful_trades) / overview.total_trades * 100
    if overview.max_loss < ZERO:
        report.profit_loss_ratio = overview.max_profit / abs(overview.max_loss)
    if daily:
        report.avg_daily_volume = sum((d.stats.total_volume for d in daily), ZERO) / len(daily)
        report.avg_daily_profit = sum((d.stats.total_profit for d in daily), ZERO) / len(daily)
        report.best_day = max(daily, key=lambda d: d.stats.total_profit)
        report.worst_day = min(daily, key=lambda d: d.stats.total_profit)
    return report


class TradeHistory:
    """Reads back the CSV trade log written by CsvResultSink."""

    def __init__(self, filepath: str):
        self.filepath = filepath

    async def load(self) -> List[ArbitrageResult]:
        if not os.path.exists(self.filepath):
            raise SinkError(f"trade log not found: {self.filepath}")
        results = []
        async with aiofiles.open(self.filepath, mode='r', newline='') as f:
            async for row in AsyncDictReader(f):
                try:
                    results.append(ArbitrageResult.from_record(row))
                except (KeyError, ValueError) as e:
                    logger.warning(f"⚠️ Skipping malformed trade record {row.get('id')}: {e}")
        return results


# --- OUTPUT ---

def _fmt(value: Decimal, places: int = 4) -> str:
    return f"{value:,.{places}f}"


def render_report(report: AnalyticsReport, console: Optional[Console] = None):
    console = console or Console()
    span = "all time" if report.start_date is None else f"{report.start_date} → {report.end_date}"
    o = report.overview

    overview = Table(title=f"📊 Arbitrage Report ({report.time_range}: {span})")
    overview.add_column("Metric", style="cyan")
    overview.add_column("Value", justify="right", style="green")
    for label, value in (
        ("Total trades", str(o.total_trades)),
        ("Successful", str(o.successful_trades)),
        ("Failed", str(o.failed_trades)),
        ("Success rate", f"{report.success_rate:.2f}%"),
        ("Total profit", _fmt(o.total_profit)),
        ("Total volume", _fmt(o.total_volume, 2)),
        ("Average profit", _fmt(o.avg_profit)),
        ("Max profit", _fmt(o.max_profit)),
        ("Max loss", _fmt(o.max_loss)),
        ("Profit/loss ratio", _fmt(report.profit_loss_ratio, 2)),
        ("Avg duration (ms)", _fmt(o.avg_duration_ms, 0)),
        ("Avg daily volume", _fmt(report.avg_daily_volume, 2)),
        ("Avg daily profit", _fmt(report.avg_daily_profit)),
        ("Best day", f"{report.best_day.day} ({_fmt(report.best_day.stats.total_profit)})" if report.best_day else "-"),
        ("Worst day", f"{report.worst_day.day} ({_fmt(report.worst_day.stats.total_profit)})" if report.worst_day else "-"),
    ):
        overview.add_row(label, value)
    console.print(overview)

    if report.asset_stats:
        assets = Table(title="💰 Top Assets")
        assets.add_column("Asset", style="magenta")
        assets.add_column("Trades", justify="right")
        assets.add_column("Profit", justify="right", style="green")
        assets.add_column("Volume", justify="right")
        for a in report.asset_stats:
            assets.add_row(a.asset, str(a.stats.total_trades), _fmt(a.stats.total_profit), _fmt(a.stats.total_volume, 2))
        console.print(assets)


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


_STAT_FIELDS = ["total_trades", "successful_trades", "failed_trades", "total_profit", "total_volume",
                "avg_profit", "max_profit", "max_loss", "avg_duration_ms"]


def _stat_row(stats: TradeStats) -> list:
    return [str(getattr(stats, name)) for name in _STAT_FIELDS]


async def export_report(report: AnalyticsReport, export_format: str, export_path: str) -> List[str]:
    """Writes the report under export_path and returns the files written."""
    os.makedirs(export_path, exist_ok=True)
    written = []

    if export_format == "json":
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = os.path.join(export_path, f"report_{report.time_range}_{stamp}.json")
        async with aiofiles.open(path, mode='w') as f:
            await f.write(json.dumps(asdict(report), default=_jsonable, indent=2))
        written.append(path)
    elif export_format == "csv":
        path = os.path.join(export_path, "overview.csv")
        async with aiofiles.open(path, mode='w', newline='') as f:
            writer = AsyncWriter(f, dialect='unix')
            await writer.writerow(_STAT_FIELDS + ["success_rate", "profit_loss_ratio"])
            await writer.writerow(_stat_row(report.overview)
                                  + [str(report.success_rate), str(report.profit_loss_ratio)])
        written.append(path)

        path = os.path.join(export_path, "daily_stats.csv")
        async with aiofiles.open(path, mode='w', newline='') as f:
            writer = AsyncWriter(f, dialect='unix')
            await writer.writerow(["date"] + _STAT_FIELDS)
            for d in report.daily_stats:
                await writer.writerow([d.day.isoformat()] + _stat_row(d.stats))
        written.append(path)

        path = os.path.join(export_path, "asset_stats.csv")
        async with aiofiles.open(path, mode='w', newline='') as f:
            writer = AsyncWriter(f, dialect='unix')
            await writer.writerow(["asset"] + _STAT_FIELDS)
            for a in report.asset_stats:
                await writer.writerow([a.asset] + _stat_row(a.stats))
        written.append(path)
    else:
        raise InvalidConfigError(f"unsupported export format '{export_format}'")

    for path in written:
        logger.info(f"📁 Report written to {path}")
    return written
