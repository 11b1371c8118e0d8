# stablearb/logger.py
import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from typing import Optional

import aiofiles
from aiocsv import AsyncReader, AsyncWriter

from .errors import SinkError
from .models import RESULT_FIELDS, ArbitrageResult

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(module)s | %(message)s'

LEVEL_ALIASES = {"trace": "DEBUG", "warn": "WARNING"}


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    Accepts the CLI spellings (trace, debug, info, warn, error).
    """
    level = LEVEL_ALIASES.get(level.lower(), level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


class ResultSink(ABC):
    """Write-only destination for finished arbitrage results."""

    @abstractmethod
    async def record(self, result: ArbitrageResult) -> int:
        """Stores the result and returns its id."""


class CsvResultSink(ResultSink):
    """
    Non-blocking CSV trade log.
    record() only enqueues; a background worker appends rows to disk,
    so disk I/O never stalls the trading loop.
    """
    def __init__(self, filepath: str, logger: Optional[logging.Logger] = None):
        self.filepath = filepath
        self.logger = logger or logging.getLogger("stablearb.sink")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._next_id = 1

    @property
    def started(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self):
        """Creates the file with a header if needed and starts the writer."""
        directory = os.path.dirname(self.filepath)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)

            existing_rows = 0
            if os.path.exists(self.filepath) and os.path.getsize(self.filepath) > 0:
                async with aiofiles.open(self.filepath, mode='r', newline='') as f:
                    async for _ in AsyncReader(f):
                        existing_rows += 1
                existing_rows -= 1  # header
            else:
                async with aiofiles.open(self.filepath, mode='w', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(RESULT_FIELDS)
        except OSError as e:
            raise SinkError(f"cannot open trade log {self.filepath}: {e}") from e

        self._next_id = max(existing_rows, 0) + 1
        self._worker_task = asyncio.create_task(self._writer_worker())
        self.logger.info(f"[CONFIG] Trade log: {self.filepath}")

    async def record(self, result: ArbitrageResult) -> int:
        if not self.started:
            raise SinkError("trade log is not started")
        record_id = self._next_id
        self._next_id += 1
        await self._queue.put(result.to_record(record_id))
        return record_id

    async def flush(self):
        await self._queue.join()

    async def close(self):
        if self._worker_task is None:
            return
        await self.flush()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                self.logger.error(f"❌ TRADE LOG FAILURE: could not write record {row[0]}: {e}")
            finally:
                self._queue.task_done()


def sink_path_from_url(db_url: str) -> str:
    """Accepts a plain path or a file:// / csv:// URL."""
    for prefix in ("file://", "csv://"):
        if db_url.startswith(prefix):
            return db_url[len(prefix):]
    if "://" in db_url:
        raise SinkError(f"unsupported trade log URL '{db_url}' (use a CSV path or file://)")
    return db_url
