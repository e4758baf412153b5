# aios/processor.py
"""
Auto Processor - the single logical queue poller

Two ways to drive it:
  - start() / stop(): background asyncio loop, one tick every `interval` seconds
  - tick(): one drain pass, for external schedulers (cron, serverless triggers)

A tick that is already running makes a concurrent tick() return immediately.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from aios.models import QueueStatus
from aios.queue_manager import QueueManager

logger = logging.getLogger("aios.processor")

MIN_INTERVAL = 5
MAX_INTERVAL = 3600


class AutoProcessor:
    def __init__(self, queue: QueueManager, interval: int = 30):
        self.queue = queue
        self.interval = self._clamp(interval)
        self.processed = 0
        self.errors = 0
        self.last_error: Optional[str] = None
        self.last_check: Optional[datetime] = None

        self._running = False
        self._processing = False
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def _clamp(seconds: int) -> int:
        return max(MIN_INTERVAL, min(MAX_INTERVAL, int(seconds)))

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Loop control
    # =========================================================================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="aios-auto-processor")
        logger.info(f"Auto processor started | interval={self.interval}s")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Auto processor stopped")

    def set_interval(self, seconds: int) -> int:
        self.interval = self._clamp(seconds)
        if self._wake is not None:
            self._wake.set()
        logger.info(f"Auto processor interval updated | interval={self.interval}s")
        return self.interval

    async def _loop(self) -> None:
        await self.tick()
        while self._running:
            self._wake.clear()
            try:
                # Woken early by stop() or set_interval(); restart the wait either way
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
                continue
            except asyncio.TimeoutError:
                pass

            if not self._running:
                break
            await self.tick()

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self) -> int:
        """Drain the queue once; returns the number of entries processed"""
        if self._processing:
            logger.debug("Tick skipped, previous tick still running")
            return 0

        self._processing = True
        self.last_check = datetime.utcnow()
        handled = 0
        try:
            while True:
                entry = await self.queue.process_next()
                if entry is None:
                    break
                handled += 1
                if entry.status == QueueStatus.COMPLETED.value:
                    self.processed += 1
                else:
                    self.errors += 1
                    self.last_error = entry.last_error
                if self._task is not None and not self._running:
                    break
        except Exception as e:
            self.errors += 1
            self.last_error = str(e)
            logger.exception(f"Auto processor tick failed | error={e}")
        finally:
            self._processing = False

        if handled:
            logger.info(f"Tick finished | handled={handled} | processed={self.processed} | errors={self.errors}")
        return handled

    def get_status(self) -> Dict[str, Any]:
        next_check = None
        if self._running and self.last_check:
            next_check = self.last_check + timedelta(seconds=self.interval)
        return {
            "running": self._running,
            "interval": self.interval,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "next_check": next_check.isoformat() if next_check else None,
            "processed": self.processed,
            "errors": self.errors,
            "last_error": self.last_error,
        }
