# aios/supervisor.py
"""
Background task supervision

Work that must not block its caller (phase reviews) is submitted here
instead of being fired and forgotten: the supervisor keeps a reference to
each asyncio task, logs its failure, and lets shutdown / tests wait for it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Coroutine, Dict, Optional, Set

logger = logging.getLogger("aios.supervisor")


class TaskSupervisor:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Schedule coro on the running loop and track it until it finishes"""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        self.submitted += 1
        task.add_done_callback(self._on_done)
        logger.debug(f"Background task submitted | name={name}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"Background task cancelled | name={task.get_name()}")
            return

        exc = task.exception()
        if exc is None:
            self.completed += 1
            return

        self.failed += 1
        self.last_error = f"{type(exc).__name__}: {exc}"
        self.last_error_at = datetime.utcnow()
        logger.error(
            f"Background task failed | name={task.get_name()} | error={self.last_error}",
            exc_info=exc,
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for tracked tasks, including ones submitted while waiting; False on timeout"""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Supervisor shut down | cancelled={len(tasks)}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }
