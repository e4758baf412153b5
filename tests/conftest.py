"""
pytest configuration for the AIOS test suite

Every test gets its own in-memory SQLite database and its own Runtime, so
no state leaks between tests.
"""

import asyncio
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from aios.config import Settings
from aios.engine import Capability, ExecutionResult
from aios.integrations.completion_client import CompletionClient
from aios.models import AgentRole, Orchestration, OrchestrationStatus, Task, TaskPriority, create_db_engine
from aios.runtime import build_runtime


# =============================================================================
# Capabilities used across test modules
# =============================================================================

class StaticCapability(Capability):
    """Returns a fixed result after an optional delay"""

    def __init__(self, name: str, output: str = "done", success: bool = True, delay: float = 0,
                 artifacts: Optional[List[str]] = None):
        self.name = name
        self.description = f"static capability {name}"
        self.output = output
        self.success = success
        self.delay = delay
        self.artifacts = artifacts or []
        self.calls = 0

    async def execute(self, task, context) -> ExecutionResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        context.log("INFO", f"{self.name} ran for {task.title}")
        if not self.success:
            return ExecutionResult(success=False, error=f"{self.name} failed")
        return ExecutionResult(success=True, result=self.output, artifacts=list(self.artifacts))


class GateCapability(Capability):
    """Blocks until the test releases it"""

    name = "gate"
    description = "waits for release"

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, task, context) -> ExecutionResult:
        self.started.set()
        await self.release.wait()
        return ExecutionResult(success=True, result="released")


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "asyncio: mark test as async")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    """Settings with background work and external services switched off"""
    s = Settings()
    s.ENVIRONMENT = "testing"
    s.AUTO_PROCESS_ENABLED = False
    s.EVENTS_REDIS_ENABLED = False
    s.ANTHROPIC_API_KEY = None
    s.PHASE_REVIEW_FAIL_OPEN = True
    s.QUEUE_MAX_ATTEMPTS = 3
    s.ORCHESTRATION_CONCURRENCY = 2
    return s


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def completion():
    """Completion client double; async methods are AsyncMocks via spec"""
    client = MagicMock(spec=CompletionClient)
    client.complete.return_value = "APPROVED\nAll deliverables present."
    return client


@pytest.fixture
def runtime(settings, db_engine, completion):
    return build_runtime(settings=settings, db_engine=db_engine, completion_client=completion)


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def make_agent(store):
    def _make(role: AgentRole = AgentRole.ARCHITECTON, name: Optional[str] = None, is_active: bool = True):
        return store.create_agent(name or role.value.title(), role, is_active=is_active)
    return _make


@pytest.fixture
def make_task(store):
    def _make(title: str = "Task", agent=None, **kwargs) -> Task:
        return store.create_task(title=title, agent_id=agent.id if agent else None, **kwargs)
    return _make


@pytest.fixture
def make_orchestration(store):
    """
    Build an orchestration from {phase name: [subtask titles]}.

    depends maps a title to the titles it depends on. Returns the
    orchestration and its tasks keyed by title.
    """
    def _make(
        phases: Dict[str, List[str]],
        agent=None,
        depends: Optional[Dict[str, List[str]]] = None,
        priorities: Optional[Dict[str, TaskPriority]] = None,
        parent_task: Optional[Task] = None,
    ) -> Tuple[Orchestration, Dict[str, Task]]:
        depends = depends or {}
        priorities = priorities or {}
        plan = {
            "phases": [
                {
                    "name": name,
                    "subtasks": [{"title": t, "depends_on": depends.get(t, [])} for t in titles],
                }
                for name, titles in phases.items()
            ]
        }
        orchestration = store.create_orchestration(
            plan=plan,
            parent_task_id=parent_task.id if parent_task else None,
            status=OrchestrationStatus.EXECUTING,
        )
        tasks: Dict[str, Task] = {}
        for titles in phases.values():
            for title in titles:
                tasks[title] = store.create_task(
                    title=title,
                    orchestration_id=orchestration.id,
                    agent_id=agent.id if agent else None,
                    priority=priorities.get(title, TaskPriority.MEDIUM),
                )
        for title, deps in depends.items():
            for dep in deps:
                store.add_dependency(tasks[title].id, tasks[dep].id)
        return orchestration, tasks
    return _make
