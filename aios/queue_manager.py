# aios/queue_manager.py
"""
Queue Manager - durable priority queue of (task, agent) work items

Entry lifecycle:
    PENDING -> PROCESSING -> COMPLETED
                          -> PENDING   (failure, attempts < max_attempts)
                          -> FAILED    (failure, attempts exhausted)
                          -> FAILED    (execution paused or cancelled, never retried)

Claiming is a compare-and-swap on the PENDING status, so two pollers sharing
one database never both win the same entry. Retries carry no backoff: a
requeued entry is eligible again on the next claim.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from aios.events import AgentEventType, EventBus
from aios.models import AgentQueue, ExecutionStatus, QueueStatus
from aios.store import WorkStore

logger = logging.getLogger("aios.queue")

# (task_id, agent_id) -> ExecutionResult
Executor = Callable[[str, str], Awaitable[Any]]

# Execution outcomes that close the entry without a retry
INTERRUPTED_STATES = (ExecutionStatus.CANCELLED, ExecutionStatus.PAUSED)


class QueueManager:
    """Enqueue / claim / complete / requeue over the agent_queue table"""

    def __init__(
        self,
        store: WorkStore,
        bus: EventBus,
        executor: Optional[Executor] = None,
        default_max_attempts: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.bus = bus
        self.default_max_attempts = default_max_attempts
        self._executor = executor
        self._clock = clock

    def set_executor(self, executor: Executor) -> None:
        self._executor = executor

    # =========================================================================
    # Enqueue / claim
    # =========================================================================

    def enqueue(
        self,
        task_id: str,
        agent_id: str,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> AgentQueue:
        entry = self.store.create_queue_entry(
            task_id=task_id,
            agent_id=agent_id,
            priority=priority,
            scheduled_for=scheduled_for,
            max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
        )
        logger.info(
            f"Queued task | task_id={task_id} | agent_id={agent_id} | "
            f"priority={priority} | scheduled_for={scheduled_for}"
        )
        self.bus.emit(
            AgentEventType.QUEUE_ADDED,
            {"queue_id": entry.id, "priority": priority},
            task_id=task_id,
            agent_id=agent_id,
        )
        return entry

    def claim_next(self, agent_id: Optional[str] = None) -> Optional[AgentQueue]:
        """
        Claim the best eligible entry: priority desc, created_at asc,
        scheduled_for null or not in the future.

        Returns the entry in PROCESSING with attempts already incremented,
        or None when nothing is claimable.
        """
        while True:
            candidate = self.store.find_next_pending(self._clock(), agent_id=agent_id)
            if candidate is None:
                return None
            if self.store.mark_queue_processing(candidate.id):
                return self.store.get_queue_entry(candidate.id)
            logger.debug(f"Claim lost to another poller | queue_id={candidate.id}")

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_next(self, agent_id: Optional[str] = None) -> Optional[AgentQueue]:
        """Claim one entry and run it through the executor; None when idle"""
        if self._executor is None:
            raise RuntimeError("QueueManager has no executor configured")

        entry = self.claim_next(agent_id=agent_id)
        if entry is None:
            return None

        logger.info(
            f"Processing queue entry | queue_id={entry.id} | task_id={entry.task_id} | "
            f"attempt={entry.attempts}/{entry.max_attempts}"
        )

        error: Optional[str] = None
        interrupted: Optional[str] = None
        try:
            result = await self._executor(entry.task_id, entry.agent_id)
            success = bool(result.success)
            if not success:
                error = result.error or "execution failed"
                status = getattr(result, "status", None)
                if status in INTERRUPTED_STATES:
                    interrupted = ExecutionStatus(status).value
        except Exception as e:
            logger.exception(f"Queue executor raised | queue_id={entry.id} | task_id={entry.task_id}")
            success = False
            error = str(e)

        if success:
            self.store.finish_queue_entry(entry.id, QueueStatus.COMPLETED)
            self.bus.emit(
                AgentEventType.QUEUE_PROCESSED,
                {"queue_id": entry.id, "status": QueueStatus.COMPLETED.value, "attempts": entry.attempts},
                task_id=entry.task_id,
                agent_id=entry.agent_id,
            )
            logger.info(f"Queue entry completed | queue_id={entry.id} | attempts={entry.attempts}")
        elif interrupted is not None:
            # A user pause or cancel is not a failure to retry
            self.store.finish_queue_entry(
                entry.id, QueueStatus.FAILED, last_error=f"execution {interrupted.lower()}, not retried"
            )
            self.bus.emit(
                AgentEventType.QUEUE_PROCESSED,
                {
                    "queue_id": entry.id,
                    "status": QueueStatus.FAILED.value,
                    "attempts": entry.attempts,
                    "interrupted": interrupted,
                },
                task_id=entry.task_id,
                agent_id=entry.agent_id,
            )
            logger.info(
                f"Queue entry closed | queue_id={entry.id} | task_id={entry.task_id} | execution={interrupted}"
            )
        else:
            exhausted = entry.attempts >= entry.max_attempts
            next_status = QueueStatus.FAILED if exhausted else QueueStatus.PENDING
            self.store.finish_queue_entry(entry.id, next_status, last_error=error)
            log = logger.error if exhausted else logger.warning
            log(
                f"Queue entry failed | queue_id={entry.id} | task_id={entry.task_id} | "
                f"attempt={entry.attempts}/{entry.max_attempts} | next={next_status.value} | error={error}"
            )

        return self.store.get_queue_entry(entry.id)

    async def drain(self, agent_id: Optional[str] = None) -> int:
        """Process until nothing is claimable; returns the number of entries run"""
        processed = 0
        while await self.process_next(agent_id=agent_id) is not None:
            processed += 1
        if processed:
            logger.info(f"Queue drained | processed={processed}")
        return processed

    # =========================================================================
    # Inspection / maintenance
    # =========================================================================

    def status(self) -> Dict[str, int]:
        counts = self.store.queue_counts()
        stats = {s.value.lower(): counts.get(s.value, 0) for s in QueueStatus}
        stats["total"] = sum(counts.values())
        return stats

    def has_open_entry(self, task_id: str) -> bool:
        return self.store.has_open_queue_entry(task_id)

    def remove_from_queue(self, task_id: str) -> int:
        removed = self.store.delete_queue_entries(task_id=task_id)
        logger.info(f"Removed from queue | task_id={task_id} | entries={removed}")
        return removed

    def withdraw_pending(self, task_id: str) -> int:
        """Delete the task's unclaimed entries so another runner can take it over"""
        removed = self.store.delete_queue_entries(task_id=task_id, status=QueueStatus.PENDING)
        if removed:
            logger.info(f"Withdrawn from queue | task_id={task_id} | entries={removed}")
        return removed

    def clear_queue(self, status: Optional[QueueStatus] = None) -> int:
        removed = self.store.delete_queue_entries(status=status)
        logger.info(f"Queue cleared | status={status.value if status else 'ALL'} | entries={removed}")
        return removed
