# tests/test_queue_manager.py
"""
Test suite for the Queue Manager

Tests:
1. Claim order: priority desc, then created_at asc
2. scheduled_for gate
3. Compare-and-swap claim
4. Bounded retry: fail, fail, succeed -> COMPLETED with attempts == 3
5. Exhausted entries are terminal
6. Paused or cancelled executions close their entry without a retry
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from aios.engine import ExecutionResult
from aios.events import AgentEventType
from aios.models import AgentRole, ExecutionStatus, QueueStatus, TaskStatus
from aios.queue_manager import QueueManager
from conftest import GateCapability


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def executor():
    return AsyncMock(return_value=ExecutionResult(success=True, result="ok"))


@pytest.fixture
def queue(runtime, executor):
    """Queue wired to a mock executor instead of the engine"""
    return QueueManager(runtime.store, runtime.bus, executor=executor, default_max_attempts=3)


@pytest.fixture
def agent(make_agent):
    return make_agent()


# =============================================================================
# Test: Enqueue / Claim
# =============================================================================

class TestClaimOrder:
    """claim_next selection rules"""

    def test_enqueue_creates_pending_and_emits(self, queue, runtime, make_task, agent):
        task = make_task("A", agent)

        entry = queue.enqueue(task.id, agent.id, priority=5)

        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempts == 0
        assert entry.max_attempts == 3
        event = runtime.bus.get_history(1)[0]
        assert event.type == AgentEventType.QUEUE_ADDED
        assert event.task_id == task.id

    def test_higher_priority_claimed_first(self, queue, make_task, agent):
        a = make_task("A", agent)
        b = make_task("B", agent)
        queue.enqueue(a.id, agent.id, priority=5)
        queue.enqueue(b.id, agent.id, priority=10)

        claimed = queue.claim_next()

        assert claimed.task_id == b.id
        assert claimed.status == QueueStatus.PROCESSING.value
        assert claimed.attempts == 1

    def test_equal_priority_oldest_first(self, queue, store, make_task, agent):
        a = make_task("A", agent)
        b = make_task("B", agent)
        older = queue.enqueue(a.id, agent.id, priority=4)
        newer = queue.enqueue(b.id, agent.id, priority=4)
        with store.session() as db:
            db.query(type(older)).filter_by(id=older.id).update({"created_at": datetime.utcnow() - timedelta(minutes=5)})
            db.query(type(newer)).filter_by(id=newer.id).update({"created_at": datetime.utcnow()})

        assert queue.claim_next().id == older.id

    def test_future_scheduled_entry_not_claimed(self, queue, make_task, agent):
        task = make_task("Later", agent)
        queue.enqueue(task.id, agent.id, priority=10, scheduled_for=datetime.utcnow() + timedelta(hours=1))

        assert queue.claim_next() is None

    def test_past_scheduled_entry_claimed(self, queue, make_task, agent):
        task = make_task("Due", agent)
        entry = queue.enqueue(task.id, agent.id, scheduled_for=datetime.utcnow() - timedelta(seconds=1))

        assert queue.claim_next().id == entry.id

    def test_injected_clock_gates_claims(self, runtime, executor, make_task, agent):
        now = datetime(2030, 1, 1, 12, 0, 0)
        queue = QueueManager(runtime.store, runtime.bus, executor=executor, clock=lambda: now)
        task = make_task("Scheduled", agent)
        queue.enqueue(task.id, agent.id, scheduled_for=now + timedelta(microseconds=1))

        assert queue.claim_next() is None

    def test_agent_filter(self, queue, make_task, make_agent):
        first = make_agent(name="First")
        second = make_agent(name="Second")
        queue.enqueue(make_task("A", first).id, first.id, priority=10)
        wanted = queue.enqueue(make_task("B", second).id, second.id, priority=1)

        assert queue.claim_next(agent_id=second.id).id == wanted.id

    def test_claim_is_compare_and_swap(self, queue, store, make_task, agent):
        entry = queue.enqueue(make_task("A", agent).id, agent.id)

        assert store.mark_queue_processing(entry.id) is True
        assert store.mark_queue_processing(entry.id) is False
        assert queue.claim_next() is None
        assert store.get_queue_entry(entry.id).attempts == 1


# =============================================================================
# Test: Processing / Retry
# =============================================================================

class TestProcessing:
    """process_next / drain outcomes"""

    @pytest.mark.asyncio
    async def test_success_completes_entry(self, queue, runtime, executor, make_task, agent):
        task = make_task("A", agent)
        entry = queue.enqueue(task.id, agent.id)

        processed = await queue.process_next()

        executor.assert_awaited_once_with(task.id, agent.id)
        assert processed.id == entry.id
        assert processed.status == QueueStatus.COMPLETED.value
        assert runtime.bus.get_history(1)[0].type == AgentEventType.QUEUE_PROCESSED

    @pytest.mark.asyncio
    async def test_process_next_idle_returns_none(self, queue, executor):
        assert await queue.process_next() is None
        executor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fail_twice_then_succeed(self, queue, executor, make_task, agent):
        executor.side_effect = [
            ExecutionResult(success=False, error="first"),
            ExecutionResult(success=False, error="second"),
            ExecutionResult(success=True, result="third time"),
        ]
        entry = queue.enqueue(make_task("Flaky", agent).id, agent.id, max_attempts=3)

        processed = await queue.drain()

        final = queue.store.get_queue_entry(entry.id)
        assert processed == 3
        assert final.status == QueueStatus.COMPLETED.value
        assert final.attempts == 3
        assert final.last_error == "second"

    @pytest.mark.asyncio
    async def test_failure_requeues_until_exhausted(self, queue, executor, make_task, agent):
        executor.return_value = ExecutionResult(success=False, error="always")
        entry = queue.enqueue(make_task("Broken", agent).id, agent.id, max_attempts=2)

        first = await queue.process_next()
        assert first.status == QueueStatus.PENDING.value
        assert first.attempts == 1

        second = await queue.process_next()
        assert second.status == QueueStatus.FAILED.value
        assert second.attempts == 2
        assert second.last_error == "always"

        assert await queue.process_next() is None
        assert queue.store.get_queue_entry(entry.id).status == QueueStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_executor_exception_counts_as_failure(self, queue, executor, make_task, agent):
        executor.side_effect = RuntimeError("store down")
        queue.enqueue(make_task("A", agent).id, agent.id, max_attempts=1)

        processed = await queue.process_next()

        assert processed.status == QueueStatus.FAILED.value
        assert processed.last_error == "store down"

    @pytest.mark.asyncio
    async def test_terminal_entry_never_transitions(self, queue, store, make_task, agent):
        entry = queue.enqueue(make_task("A", agent).id, agent.id)
        await queue.process_next()

        assert store.finish_queue_entry(entry.id, QueueStatus.PENDING) is False
        assert store.mark_queue_processing(entry.id) is False
        assert store.get_queue_entry(entry.id).status == QueueStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_drain_processes_in_priority_order(self, queue, executor, make_task, agent):
        low = make_task("Low", agent)
        high = make_task("High", agent)
        queue.enqueue(low.id, agent.id, priority=1)
        queue.enqueue(high.id, agent.id, priority=9)

        assert await queue.drain() == 2
        assert [c.args[0] for c in executor.await_args_list] == [high.id, low.id]

    @pytest.mark.asyncio
    async def test_interrupted_result_closes_entry(self, queue, runtime, executor, make_task, agent):
        executor.return_value = ExecutionResult(success=False, error="cancelled", status=ExecutionStatus.CANCELLED)
        entry = queue.enqueue(make_task("Stopped", agent).id, agent.id, max_attempts=3)

        processed = await queue.process_next()

        assert processed.status == QueueStatus.FAILED.value
        assert processed.attempts == 1
        assert processed.last_error == "execution cancelled, not retried"
        assert await queue.drain() == 0
        executor.assert_awaited_once()
        event = runtime.bus.get_history(1)[0]
        assert event.type == AgentEventType.QUEUE_PROCESSED
        assert event.data["interrupted"] == ExecutionStatus.CANCELLED.value
        assert queue.store.get_queue_entry(entry.id).status == QueueStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_missing_executor(self, runtime):
        bare = QueueManager(runtime.store, runtime.bus)
        with pytest.raises(RuntimeError):
            await bare.process_next()


# =============================================================================
# Test: Status / Maintenance
# =============================================================================

class TestStatus:
    """Aggregates and cleanup"""

    @pytest.mark.asyncio
    async def test_status_counts(self, queue, make_task, agent):
        queue.enqueue(make_task("A", agent).id, agent.id, priority=2)
        queue.enqueue(make_task("B", agent).id, agent.id, priority=1)
        await queue.process_next()

        stats = queue.status()

        assert stats == {"pending": 1, "processing": 0, "completed": 1, "failed": 0, "total": 2}

    def test_remove_and_clear(self, queue, make_task, agent):
        a = make_task("A", agent)
        queue.enqueue(a.id, agent.id)
        queue.enqueue(make_task("B", agent).id, agent.id)

        assert queue.has_open_entry(a.id) is True
        assert queue.remove_from_queue(a.id) == 1
        assert queue.has_open_entry(a.id) is False
        assert queue.clear_queue(QueueStatus.PENDING) == 1
        assert queue.status()["total"] == 0

    def test_withdraw_pending_leaves_claimed_entries(self, queue, store, make_task, agent):
        claimed_task = make_task("Claimed", agent)
        waiting_task = make_task("Waiting", agent)
        queue.enqueue(claimed_task.id, agent.id, priority=9)
        queue.enqueue(waiting_task.id, agent.id, priority=1)
        queue.claim_next()

        assert queue.withdraw_pending(claimed_task.id) == 0
        assert queue.withdraw_pending(waiting_task.id) == 1
        assert queue.has_open_entry(claimed_task.id) is True
        assert queue.has_open_entry(waiting_task.id) is False


# =============================================================================
# Test: Interrupted executions through the engine
# =============================================================================

class TestInterruptedExecutions:
    """A paused or cancelled execution closes its entry instead of re-running"""

    async def _start(self, runtime, make_task, agent):
        gate = GateCapability()
        runtime.engine.register_capability(AgentRole.ARCHITECTON, gate)
        task = make_task("Long job", agent)
        entry = runtime.queue.enqueue(task.id, agent.id, max_attempts=3)
        processing = asyncio.create_task(runtime.queue.process_next())
        await gate.started.wait()
        execution = runtime.store.list_executions(task_id=task.id, statuses=[ExecutionStatus.RUNNING])[0]
        return gate, task, entry, processing, execution

    @pytest.mark.asyncio
    async def test_cancelled_execution_not_rerun(self, runtime, store, make_task, agent):
        gate, task, entry, processing, execution = await self._start(runtime, make_task, agent)

        runtime.engine.cancel_execution(execution.id)
        gate.release.set()
        processed = await processing

        assert processed.id == entry.id
        assert processed.status == QueueStatus.FAILED.value
        assert processed.attempts == 1
        assert processed.last_error == "execution cancelled, not retried"
        assert await runtime.queue.drain() == 0
        executions = store.list_executions(task_id=task.id)
        assert [e.status for e in executions] == [ExecutionStatus.CANCELLED.value]
        assert store.get_task(task.id).status != TaskStatus.DONE.value

    @pytest.mark.asyncio
    async def test_paused_execution_resumes_without_queue(self, runtime, store, make_task, agent):
        gate, task, entry, processing, execution = await self._start(runtime, make_task, agent)

        runtime.engine.pause_execution(execution.id)
        gate.release.set()
        processed = await processing

        assert processed.status == QueueStatus.FAILED.value
        assert processed.last_error == "execution paused, not retried"
        assert await runtime.queue.drain() == 0

        resumed = await runtime.engine.resume_execution(execution.id)

        assert resumed.success is True
        assert store.get_task(task.id).status == TaskStatus.DONE.value
        assert [e.id for e in store.list_executions(task_id=task.id)] == [execution.id]
