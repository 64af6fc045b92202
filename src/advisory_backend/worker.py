"""Periodic driver for the export pipeline."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .export_processor import ExportProcessor

logger = logging.getLogger(__name__)


class ExportWorker:
    """
    Runs one reconcile + process cycle every ``poll_interval`` seconds.

    Each tick handles at most one job, matching a cron-style trigger. The
    worker only schedules; claim safety lives in the job store.
    """

    def __init__(self, processor: ExportProcessor, poll_interval: float = 30.0) -> None:
        self.processor = processor
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """
        Run a single tick.

        Returns:
            True if a job was claimed during this tick
        """
        await self.processor.reconcile_stale_jobs()
        job = await self.processor.process_document_exports()
        return job is not None

    async def _loop(self) -> None:
        logger.info(f"Export worker started (poll interval {self.poll_interval}s)")
        while True:
            try:
                claimed = await self.run_once()
            except Exception:
                logger.exception("Export worker tick failed")
                claimed = False
            # Drain the queue back-to-back; only sleep once it is empty.
            if not claimed:
                await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        await self.processor.audit.drain()
        logger.info("Export worker stopped")
