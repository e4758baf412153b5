# aios/engine/execution_engine.py
"""
Execution Engine - lifecycle of one AgentExecution, and orchestration runs

execute_task(task_id, agent_id):
    load task + agent, RUNNING execution row, task IN_PROGRESS,
    dispatch (registered Capabilities in order, or one generic completion),
    COMPLETED + task DONE + completion hook | FAILED with the error.

Pause / cancel are cooperative: they trip the execution's CancellationToken,
which the dispatch loop checks between steps. Terminal status writes are
conditional on the execution still being RUNNING, so a pause or cancel that
lands while a step is in flight is never overwritten.

run_orchestration_loop(orchestration_id):
    repeated passes over the ready tasks on the worker pool, with per-task
    retries and a per-execution timeout, until the orchestration settles.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aios.dependency_resolver import DependencyResolver
from aios.engine.context import (
    CancellationToken,
    CapabilityRegistry,
    ExecutionContext,
    ExecutionResult,
)
from aios.engine.state_machine import TERMINAL_STATES, require_transition, sources_for
from aios.events import AgentEventType, EventBus
from aios.exceptions import AIOSError, CapabilityFailure, InvalidStateTransition
from aios.integrations.completion_client import CompletionClient, CompletionClientError
from aios.learning import AgentLearning
from aios.middleware.correlation import correlation_scope
from aios.models import (
    Agent,
    AgentExecution,
    AgentRole,
    ExecutionStatus,
    LogLevel,
    OrchestrationStatus,
    Task,
    TaskStatus,
)
from aios.phase_gate import PhaseGateController, is_review_task
from aios.store import WorkStore

logger = logging.getLogger("aios.engine")

RESULT_SEPARATOR = "\n\n---\n\n"

# Progress budget: 10% at start, 10-90% split across Capabilities, 100% on success
PROGRESS_START = 10
PROGRESS_BUDGET = 80

# Orchestration loop
LOOP_FINAL_STATES = (OrchestrationStatus.COMPLETED.value, OrchestrationStatus.FAILED.value)
LOOP_POLL_INTERVAL = 0.5

ROLE_SYSTEM_PROMPTS: Dict[str, str] = {
    AgentRole.MAESTRO.value: (
        "You are MAESTRO, the orchestration agent, specialized in:\n"
        "- Project planning and coordination\n"
        "- Managing many tasks and their dependencies\n"
        "- Strategy and roadmaps\n"
        "- Coordination across disciplines\n"
        "Analyze the task and produce a detailed execution plan."
    ),
    AgentRole.SENTINEL.value: (
        "You are SENTINEL, the quality guardian, specialized in:\n"
        "- Code review and static analysis\n"
        "- Unit, integration and end-to-end testing\n"
        "- Security and vulnerabilities\n"
        "- Performance and optimization\n"
        "Analyze the task and give concrete quality recommendations."
    ),
    AgentRole.ARCHITECTON.value: (
        "You are ARCHITECTON, the systems architect, specialized in:\n"
        "- Application and system architecture\n"
        "- Database design and data modeling\n"
        "- Infrastructure, DevOps and integrations\n"
        "- Structural technical decisions\n"
        "Analyze the task and propose an architectural solution."
    ),
    AgentRole.PIXEL.value: (
        "You are PIXEL, the interface designer, specialized in:\n"
        "- UI/UX and interface design\n"
        "- Visual components, layouts and responsive styling\n"
        "- Design systems\n"
        "- Accessibility\n"
        "Analyze the task and propose interface improvements."
    ),
}


@dataclass
class LoopStats:
    """Outcome counters of one run_orchestration_loop call"""
    orchestration_id: str
    started: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    interrupted: int = 0
    timed_out: int = 0
    elapsed_ms: int = 0
    final_status: Optional[str] = None
    already_running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ExecutionEngine:
    """Runs tasks through their agent's Capabilities or the generic completion path"""

    def __init__(
        self,
        store: WorkStore,
        bus: EventBus,
        registry: Optional[CapabilityRegistry] = None,
        resolver: Optional[DependencyResolver] = None,
        phase_gate: Optional[PhaseGateController] = None,
        completion_client: Optional[CompletionClient] = None,
        learning: Optional[AgentLearning] = None,
        default_concurrency: int = 2,
        retry_attempts: int = 3,
        execution_timeout: float = 300.0,
    ):
        self.store = store
        self.bus = bus
        self.registry = registry or CapabilityRegistry()
        self.resolver = resolver
        self.phase_gate = phase_gate
        self.completion_client = completion_client
        self.learning = learning
        self.default_concurrency = default_concurrency
        self.retry_attempts = max(0, min(10, retry_attempts))
        self.execution_timeout = execution_timeout
        self._tokens: Dict[str, CancellationToken] = {}
        self._active_loops: Set[str] = set()

    def register_capability(self, role: AgentRole, capability) -> None:
        self.registry.register(role, capability)

    def active_executions(self) -> List[str]:
        return list(self._tokens)

    # =========================================================================
    # Single execution
    # =========================================================================

    async def execute_task(self, task_id: str, agent_id: str) -> ExecutionResult:
        """
        Run one task with one agent.

        Raises:
            NotFoundError: task or agent missing
            InvalidStateTransition: the task already has a RUNNING execution
        Every other failure is returned as ExecutionResult(success=False).
        """
        task = self.store.require_task(task_id)
        agent = self.store.require_agent(agent_id)
        if self.store.list_executions(task_id=task_id, statuses=[ExecutionStatus.RUNNING]):
            raise InvalidStateTransition(task_id, ExecutionStatus.RUNNING, "start a new execution for task")

        execution = self.store.create_execution(task_id, agent_id, status=ExecutionStatus.RUNNING)
        self.store.set_task_status(task_id, TaskStatus.IN_PROGRESS)

        with correlation_scope(f"exec-{execution.id}"):
            logger.info(
                f"Execution started | execution_id={execution.id} | task_id={task_id} | "
                f"agent={agent.name} | role={agent.role}"
            )
            self.bus.emit(
                AgentEventType.EXECUTION_STARTED,
                {"agent_name": agent.name, "task_title": task.title},
                execution_id=execution.id, task_id=task_id, agent_id=agent_id,
            )
            self.bus.emit(
                AgentEventType.AGENT_BUSY,
                {"agent_name": agent.name},
                execution_id=execution.id, task_id=task_id, agent_id=agent_id,
            )
            return await self._run(execution.id, task, agent, resumed=False)

    async def _run(self, execution_id: str, task: Task, agent: Agent, resumed: bool) -> ExecutionResult:
        token = CancellationToken()
        self._tokens[execution_id] = token
        context = ExecutionContext(self.store, self.bus, execution_id, task.id, agent.id, token)

        try:
            if resumed:
                context.log(LogLevel.INFO, "Execution resumed")
            else:
                context.log(LogLevel.INFO, f"Execution started by agent {agent.name}")
                context.update_progress(PROGRESS_START)

            result = await self._dispatch(task, agent, context)

            if token.cancelled:
                return self._interrupted(execution_id, token)
            if result.success:
                return self._complete(execution_id, task, agent, context, result)
            return self._fail(execution_id, task, agent, context, result.error or "execution failed", result)

        except Exception as e:
            logger.exception(f"Execution raised | execution_id={execution_id} | task_id={task.id}")
            if token.cancelled:
                return self._interrupted(execution_id, token)
            return self._fail(execution_id, task, agent, context, f"Unhandled error: {e}")

        finally:
            if self._tokens.get(execution_id) is token:
                del self._tokens[execution_id]
            self.bus.emit(
                AgentEventType.AGENT_IDLE,
                {"agent_name": agent.name},
                execution_id=execution_id, task_id=task.id, agent_id=agent.id,
            )

    async def _dispatch(self, task: Task, agent: Agent, context: ExecutionContext) -> ExecutionResult:
        capabilities = self.registry.get(agent.role)
        if capabilities:
            context.log(LogLevel.INFO, f"Running {len(capabilities)} registered capabilities")
            return await self._run_capabilities(capabilities, task, context)
        context.log(LogLevel.INFO, "No capabilities registered, using generic completion")
        return await self._run_generic(task, agent, context)

    async def _run_capabilities(self, capabilities, task: Task, context: ExecutionContext) -> ExecutionResult:
        outputs: List[str] = []
        artifacts: List[str] = []
        total = len(capabilities)

        for i, capability in enumerate(capabilities):
            if context.cancelled:
                return ExecutionResult(success=False, error=context.token.reason, artifacts=artifacts)

            context.log(LogLevel.INFO, f"Capability {capability.name} started", {"step": i + 1, "of": total})
            result = await capability.execute(task, context)
            artifacts.extend(result.artifacts or [])

            if not result.success:
                failure = CapabilityFailure(capability.name, result.error)
                context.log(LogLevel.ERROR, str(failure), {"capability": capability.name})
                return ExecutionResult(
                    success=False,
                    result=result.result,
                    error=result.error or str(failure),
                    artifacts=artifacts,
                )

            if result.result:
                outputs.append(result.result)
            context.update_progress(PROGRESS_START + round(PROGRESS_BUDGET * (i + 1) / total))

        if context.cancelled:
            return ExecutionResult(success=False, error=context.token.reason, artifacts=artifacts)
        return ExecutionResult(success=True, result=RESULT_SEPARATOR.join(outputs), artifacts=artifacts)

    async def _run_generic(self, task: Task, agent: Agent, context: ExecutionContext) -> ExecutionResult:
        if self.completion_client is None:
            return ExecutionResult(
                success=False,
                error=f"No capabilities registered for role {agent.role} and no completion client configured",
            )

        context.update_progress(20)
        system_prompt = ROLE_SYSTEM_PROMPTS.get(agent.role)
        prompt = (
            f"Task: {task.title}\n\n"
            f"Description: {task.description or 'No description'}\n\n"
            f"Priority: {task.priority}\n"
            f"Current status: {task.status}\n\n"
            "Analyze this task and provide a detailed action plan."
        )

        if self.learning is not None:
            try:
                learning_context = self.learning.generate_improvement_prompt(agent.id)
            except AIOSError as e:
                learning_context = ""
                context.log(LogLevel.DEBUG, f"Learning context unavailable: {e}")
            if learning_context:
                prompt += learning_context
                context.log(LogLevel.INFO, "Learning context added to prompt")

        context.log(LogLevel.DEBUG, "Sending prompt to completion service", {"role": agent.role, "task_title": task.title})
        context.update_progress(40)
        if context.cancelled:
            return ExecutionResult(success=False, error=context.token.reason)

        try:
            response = await self.completion_client.complete(prompt, system_prompt)
        except CompletionClientError as e:
            context.log(LogLevel.ERROR, f"Completion call failed: {e.message}", e.to_dict())
            return ExecutionResult(success=False, error=e.message)

        context.update_progress(80)
        context.log(LogLevel.INFO, "Completion response received")
        return ExecutionResult(success=True, result=response)

    # =========================================================================
    # Terminal outcomes
    # =========================================================================

    def _complete(
        self, execution_id: str, task: Task, agent: Agent, context: ExecutionContext, result: ExecutionResult
    ) -> ExecutionResult:
        written = self.store.transition_execution(
            execution_id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.COMPLETED,
            progress=100,
            result=result.result,
            error=None,
            artifacts=result.artifacts,
            completed_at=datetime.utcnow(),
        )
        if not written:
            return self._lost_race(execution_id)

        self.store.set_task_status(task.id, TaskStatus.DONE)
        context.progress = 100
        self.bus.emit(
            AgentEventType.EXECUTION_PROGRESS, {"progress": 100},
            execution_id=execution_id, task_id=task.id, agent_id=agent.id,
        )
        self.bus.emit(
            AgentEventType.EXECUTION_COMPLETED, {"result": result.result},
            execution_id=execution_id, task_id=task.id, agent_id=agent.id,
        )
        context.log(LogLevel.INFO, "Execution completed successfully")
        self.store.add_comment(
            task.id,
            "Execution completed successfully. The result is available in the execution history.",
            author_name=agent.name,
        )
        logger.info(f"Execution completed | execution_id={execution_id} | task_id={task.id}")

        self._on_completed(task)

        result.execution_id = execution_id
        result.status = ExecutionStatus.COMPLETED
        return result

    def _fail(
        self,
        execution_id: str,
        task: Task,
        agent: Agent,
        context: ExecutionContext,
        error: str,
        result: Optional[ExecutionResult] = None,
    ) -> ExecutionResult:
        written = self.store.transition_execution(
            execution_id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.FAILED,
            error=error,
            result=result.result if result else None,
            artifacts=result.artifacts if result else None,
            completed_at=datetime.utcnow(),
        )
        if not written:
            return self._lost_race(execution_id)

        self.bus.emit(
            AgentEventType.EXECUTION_FAILED, {"error": error},
            execution_id=execution_id, task_id=task.id, agent_id=agent.id,
        )
        context.log(LogLevel.ERROR, f"Execution failed: {error}")
        self.store.add_comment(task.id, f"Execution failed: {error}", author_name=agent.name)
        logger.warning(f"Execution failed | execution_id={execution_id} | task_id={task.id} | error={error}")

        return ExecutionResult(
            success=False,
            result=result.result if result else None,
            error=error,
            artifacts=result.artifacts if result else [],
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
        )

    def _interrupted(self, execution_id: str, token: CancellationToken) -> ExecutionResult:
        """Dispatch stopped at a checkpoint; pause / cancel already wrote the status"""
        execution = self.store.get_execution(execution_id)
        status = ExecutionStatus(execution.status) if execution else None
        logger.info(f"Execution interrupted | execution_id={execution_id} | reason={token.reason}")
        return ExecutionResult(success=False, error=token.reason, execution_id=execution_id, status=status)

    def _lost_race(self, execution_id: str) -> ExecutionResult:
        """Final write skipped because the execution left RUNNING meanwhile"""
        execution = self.store.get_execution(execution_id)
        status = ExecutionStatus(execution.status) if execution else None
        logger.warning(
            f"Final status not written | execution_id={execution_id} | current={status.value if status else None}"
        )
        return ExecutionResult(
            success=False,
            error=f"execution is {status.value.lower() if status else 'missing'}",
            execution_id=execution_id,
            status=status,
        )

    def _on_completed(self, task: Task) -> None:
        """
        Check whether the task closed its phase, then release dependents.

        The review task must exist before the progress refresh inside
        on_task_completed counts the orchestration's tasks.
        """
        try:
            if self.phase_gate is not None and task.orchestration_id and not is_review_task(task):
                self.phase_gate.check_phase_completion(task.id, task.orchestration_id)
            if self.resolver is not None:
                self.resolver.on_task_completed(task.id)
        except Exception:
            # The execution is already COMPLETED; the hook must not turn it into a failure
            logger.exception(f"Completion hook failed | task_id={task.id}")

    # =========================================================================
    # Pause / resume / cancel
    # =========================================================================

    def pause_execution(self, execution_id: str) -> AgentExecution:
        execution = self.store.require_execution(execution_id)
        require_transition(execution_id, execution.status, ExecutionStatus.PAUSED, "pause")

        if not self.store.transition_execution(execution_id, [ExecutionStatus.RUNNING], ExecutionStatus.PAUSED):
            current = self.store.require_execution(execution_id)
            raise InvalidStateTransition(execution_id, current.status, "pause")

        token = self._tokens.get(execution_id)
        if token is not None:
            token.cancel(CancellationToken.PAUSED)

        self.store.add_log(execution_id, LogLevel.INFO, "Execution paused")
        self.bus.emit(
            AgentEventType.EXECUTION_PAUSED, {"requested_by": "user"},
            execution_id=execution_id, task_id=execution.task_id, agent_id=execution.agent_id,
        )
        logger.info(f"Execution paused | execution_id={execution_id}")
        return self.store.require_execution(execution_id)

    async def resume_execution(self, execution_id: str) -> ExecutionResult:
        """
        PAUSED -> RUNNING, then dispatch again from the first step.

        Raises:
            InvalidStateTransition: not PAUSED, or another execution of the
                same task is RUNNING
        """
        execution = self.store.require_execution(execution_id)
        if execution.status != ExecutionStatus.PAUSED.value:
            raise InvalidStateTransition(execution_id, execution.status, "resume")

        task = self.store.require_task(execution.task_id)
        agent = self.store.require_agent(execution.agent_id)

        running = self.store.list_executions(task_id=task.id, statuses=[ExecutionStatus.RUNNING])
        if running:
            logger.warning(
                f"Resume refused | execution_id={execution_id} | task_id={task.id} | running={running[0].id}"
            )
            raise InvalidStateTransition(task.id, ExecutionStatus.RUNNING, "resume a paused execution for task")

        if not self.store.transition_execution(execution_id, [ExecutionStatus.PAUSED], ExecutionStatus.RUNNING):
            current = self.store.require_execution(execution_id)
            raise InvalidStateTransition(execution_id, current.status, "resume")

        with correlation_scope(f"exec-{execution_id}"):
            self.bus.emit(
                AgentEventType.EXECUTION_RESUMED, {},
                execution_id=execution_id, task_id=task.id, agent_id=agent.id,
            )
            logger.info(f"Execution resumed | execution_id={execution_id}")
            return await self._run(execution_id, task, agent, resumed=True)

    def cancel_execution(self, execution_id: str) -> AgentExecution:
        execution = self.store.require_execution(execution_id)
        if ExecutionStatus(execution.status) in TERMINAL_STATES:
            raise InvalidStateTransition(execution_id, execution.status, "cancel")

        cancelled = self.store.transition_execution(
            execution_id,
            sources_for(ExecutionStatus.CANCELLED),
            ExecutionStatus.CANCELLED,
            error="cancelled",
            completed_at=datetime.utcnow(),
        )
        if not cancelled:
            current = self.store.require_execution(execution_id)
            raise InvalidStateTransition(execution_id, current.status, "cancel")

        token = self._tokens.get(execution_id)
        if token is not None:
            token.cancel(CancellationToken.CANCELLED)

        self.store.add_log(execution_id, LogLevel.WARNING, "Execution cancelled by user")
        agent = self.store.get_agent(execution.agent_id)
        self.store.add_comment(
            execution.task_id,
            "Execution cancelled by user.",
            author_name=agent.name if agent else "AIOS",
            author_type="AGENT" if agent else "SYSTEM",
        )
        self.bus.emit(
            AgentEventType.EXECUTION_CANCELLED, {},
            execution_id=execution_id, task_id=execution.task_id, agent_id=execution.agent_id,
        )
        logger.info(f"Execution cancelled | execution_id={execution_id}")
        return self.store.require_execution(execution_id)

    # =========================================================================
    # Orchestration runs
    # =========================================================================

    def active_loops(self) -> List[str]:
        return sorted(self._active_loops)

    async def _run_pool(
        self, tasks: List[Task], limit: int, runner: Callable[[Task], Awaitable[ExecutionResult]]
    ) -> Dict[str, ExecutionResult]:
        """Run tasks through runner with at most limit in flight; results keyed by task id"""
        pending: asyncio.Queue = asyncio.Queue()
        for task in tasks:
            pending.put_nowait(task)
        results: Dict[str, ExecutionResult] = {}

        async def worker(worker_id: int) -> None:
            while True:
                try:
                    task = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await runner(task)
                except AIOSError as e:
                    logger.warning(f"Orchestration task not started | worker={worker_id} | task_id={task.id} | error={e}")
                    result = ExecutionResult(success=False, error=str(e))
                results[task.id] = result

        await asyncio.gather(*(worker(i) for i in range(min(limit, max(1, len(tasks))))))
        return results

    async def execute_orchestration(
        self, orchestration_id: str, concurrency_limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Run every ready task of an orchestration with at most
        concurrency_limit simultaneous execute_task calls.
        """
        if self.resolver is None:
            raise RuntimeError("ExecutionEngine has no dependency resolver configured")

        limit = max(1, concurrency_limit or self.default_concurrency)
        self.store.require_orchestration(orchestration_id)
        ready = self.resolver.get_ready_tasks(orchestration_id)

        runnable: List[Task] = []
        skipped: List[str] = []
        for task in ready:
            if not task.agent_id:
                logger.warning(f"Ready task has no agent, skipping | task_id={task.id} | title={task.title!r}")
                skipped.append(task.id)
                continue
            runnable.append(task)

        logger.info(
            f"Orchestration run started | orchestration_id={orchestration_id} | "
            f"ready={len(ready)} | runnable={len(runnable)} | concurrency={limit}"
        )
        outcomes = await self._run_pool(runnable, limit, lambda task: self.execute_task(task.id, task.agent_id))
        results = {task_id: result.to_dict() for task_id, result in outcomes.items()}

        succeeded = sum(1 for r in results.values() if r["success"])
        logger.info(
            f"Orchestration run finished | orchestration_id={orchestration_id} | "
            f"executed={len(results)} | succeeded={succeeded} | skipped={len(skipped)}"
        )
        return {
            "orchestration_id": orchestration_id,
            "executed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "skipped": skipped,
            "results": results,
        }

    async def run_orchestration_loop(
        self,
        orchestration_id: str,
        concurrency_limit: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        execution_timeout: Optional[float] = None,
    ) -> LoopStats:
        """
        Drive an orchestration until it is COMPLETED or FAILED, or until
        nothing is left that this loop can run.

        Each pass takes the ready tasks (withdrawing their queue entries) and
        runs them on the worker pool, each execution bounded by
        execution_timeout. A failed task goes back to TODO up to
        retry_attempts times; after that it is BLOCKED and the orchestration
        FAILED. Paused or cancelled executions are left alone. Between passes
        the loop waits for executions owned by queue pollers and for pending
        phase reviews. Only one loop runs per orchestration.
        """
        if self.resolver is None:
            raise RuntimeError("ExecutionEngine has no dependency resolver configured")
        self.store.require_orchestration(orchestration_id)

        stats = LoopStats(orchestration_id=orchestration_id)
        if orchestration_id in self._active_loops:
            logger.warning(f"Orchestration loop already running | orchestration_id={orchestration_id}")
            stats.already_running = True
            return stats

        limit = max(1, concurrency_limit or self.default_concurrency)
        allowed = self.retry_attempts if retry_attempts is None else max(0, retry_attempts)
        timeout = execution_timeout or self.execution_timeout
        retries: Dict[str, int] = {}
        clock = asyncio.get_running_loop().time
        started_at = clock()
        idle_waited = 0.0

        self._active_loops.add(orchestration_id)
        logger.info(
            f"Orchestration loop started | orchestration_id={orchestration_id} | concurrency={limit} | "
            f"retry_attempts={allowed} | execution_timeout={timeout}"
        )
        try:
            while True:
                orchestration = self.store.get_orchestration(orchestration_id)
                if orchestration is None or orchestration.status in LOOP_FINAL_STATES:
                    break

                tasks = self.resolver.take_ready_tasks(orchestration_id)
                if tasks:
                    idle_waited = 0.0
                    outcomes = await self._run_pool(
                        tasks, limit, lambda task: self._run_with_timeout(task, timeout, stats)
                    )
                    stats.started += len(outcomes)
                    for task in tasks:
                        if task.id in outcomes:
                            self._settle(orchestration_id, task, outcomes[task.id], retries, allowed, stats)
                    continue

                if self.store.count_running_executions(orchestration_id):
                    if idle_waited >= timeout:
                        logger.warning(f"Gave up waiting for running executions | orchestration_id={orchestration_id}")
                        break
                    await asyncio.sleep(LOOP_POLL_INTERVAL)
                    idle_waited += LOOP_POLL_INTERVAL
                    continue

                if self.phase_gate is not None and self.phase_gate.supervisor.pending:
                    if await self.phase_gate.supervisor.join(timeout=timeout):
                        continue
                    logger.warning(f"Gave up waiting for phase reviews | orchestration_id={orchestration_id}")
                    break

                open_tasks = [
                    t for t in self.store.list_tasks(orchestration_id=orchestration_id)
                    if t.status != TaskStatus.DONE.value
                ]
                if open_tasks:
                    logger.warning(
                        f"Orchestration loop stalled | orchestration_id={orchestration_id} | "
                        f"open_tasks={len(open_tasks)} | status={orchestration.status}"
                    )
                break
        finally:
            self._active_loops.discard(orchestration_id)
            stats.elapsed_ms = int((clock() - started_at) * 1000)

        final = self.store.get_orchestration(orchestration_id)
        stats.final_status = final.status if final else None
        logger.info(
            f"Orchestration loop finished | orchestration_id={orchestration_id} | status={stats.final_status} | "
            f"started={stats.started} | completed={stats.completed} | failed={stats.failed} | "
            f"retried={stats.retried} | elapsed_ms={stats.elapsed_ms}"
        )
        return stats

    async def _run_with_timeout(self, task: Task, timeout: float, stats: LoopStats) -> ExecutionResult:
        try:
            return await asyncio.wait_for(self.execute_task(task.id, task.agent_id), timeout)
        except asyncio.TimeoutError:
            stats.timed_out += 1
            return self._expire(task, f"timed out after {timeout:g}s")

    def _expire(self, task: Task, error: str) -> ExecutionResult:
        """FAILED for executions of task left RUNNING by a cancelled dispatch"""
        expired: Optional[str] = None
        for execution in self.store.list_executions(task_id=task.id, statuses=[ExecutionStatus.RUNNING]):
            if not self.store.transition_execution(
                execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.FAILED,
                error=error, completed_at=datetime.utcnow(),
            ):
                continue
            expired = execution.id
            self.store.add_log(execution.id, LogLevel.ERROR, f"Execution {error}")
            self.bus.emit(
                AgentEventType.EXECUTION_FAILED, {"error": error, "timed_out": True},
                execution_id=execution.id, task_id=task.id, agent_id=execution.agent_id,
            )
            logger.warning(f"Execution expired | execution_id={execution.id} | task_id={task.id} | error={error}")
        return ExecutionResult(success=False, error=error, execution_id=expired, status=ExecutionStatus.FAILED)

    def _settle(
        self,
        orchestration_id: str,
        task: Task,
        result: ExecutionResult,
        retries: Dict[str, int],
        allowed: int,
        stats: LoopStats,
    ) -> None:
        """Count one loop outcome; retry or give up on a failed task"""
        if result.success:
            stats.completed += 1
            retries.pop(task.id, None)
            return

        if result.status in (ExecutionStatus.CANCELLED, ExecutionStatus.PAUSED):
            stats.interrupted += 1
            logger.info(f"Loop task interrupted, not retried | task_id={task.id} | status={result.status.value}")
            return

        used = retries.get(task.id, 0)
        if used < allowed:
            retries[task.id] = used + 1
            stats.retried += 1
            self.store.set_task_status(task.id, TaskStatus.TODO)
            self.bus.emit(
                AgentEventType.QUEUE_ADDED,
                {"orchestration_id": orchestration_id, "attempt": used + 1, "max_attempts": allowed,
                 "error": result.error},
                task_id=task.id, agent_id=task.agent_id,
            )
            logger.warning(f"Retrying task | task_id={task.id} | retry={used + 1}/{allowed} | error={result.error}")
            return

        stats.failed += 1
        retries.pop(task.id, None)
        summary = f'Task "{task.title}" failed after {allowed} retries: {result.error}'
        self.store.set_task_status(task.id, TaskStatus.BLOCKED)
        self.store.update_orchestration(orchestration_id, status=OrchestrationStatus.FAILED, current_phase=summary)
        self.bus.emit(
            AgentEventType.EXECUTION_FAILED,
            {"orchestration_id": orchestration_id, "task_title": task.title, "error": result.error,
             "retries_exhausted": True},
            task_id=task.id, agent_id=task.agent_id,
        )
        logger.error(f"Orchestration failed | orchestration_id={orchestration_id} | {summary}")
