# aios/engine/context.py
"""
Execution context - what a Capability sees while it runs

  - ExecutionResult: outcome of a Capability or of a whole execution
  - Capability: role-specific unit of work (abstract)
  - CapabilityRegistry: role -> ordered Capabilities, populated at startup
  - CancellationToken: cooperative stop signal checked between steps
  - ExecutionContext: log / update_progress / request_human_review
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aios.events import AgentEventType, EventBus
from aios.models import AgentRole, ExecutionStatus, LogLevel, Task
from aios.store import WorkStore

logger = logging.getLogger("aios.engine.context")


@dataclass
class ExecutionResult:
    success: bool
    result: Optional[str] = None
    error: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    execution_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "artifacts": self.artifacts,
            "execution_id": self.execution_id,
            "status": self.status.value if self.status else None,
        }


class Capability(ABC):
    """
    Pluggable unit of work for an agent role.

    execute() must report business failures as ExecutionResult(success=False)
    and should call context.log / context.update_progress as it goes.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    async def execute(self, task: Task, context: "ExecutionContext") -> ExecutionResult:
        ...


class CapabilityRegistry:
    """Role-keyed Capability lookup; order of registration is execution order"""

    def __init__(self):
        self._by_role: Dict[str, List[Capability]] = {}

    def register(self, role: AgentRole, capability: Capability) -> None:
        key = AgentRole(role).value
        self._by_role.setdefault(key, []).append(capability)
        logger.info(f"Capability registered | role={key} | name={capability.name}")

    def get(self, role: Any) -> List[Capability]:
        return list(self._by_role.get(getattr(role, "value", role), []))


class CancellationToken:
    """Tripped by pause / cancel / request_human_review; checked between steps"""

    PAUSED = "paused"
    CANCELLED = "cancelled"

    def __init__(self):
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = CANCELLED) -> None:
        # First reason wins; a later cancel does not relabel a pause
        if self.reason is None:
            self.reason = reason


class ExecutionContext:
    """Scoped view of one execution handed to every Capability call"""

    def __init__(
        self,
        store: WorkStore,
        bus: EventBus,
        execution_id: str,
        task_id: str,
        agent_id: str,
        token: CancellationToken,
    ):
        self.store = store
        self.bus = bus
        self.execution_id = execution_id
        self.task_id = task_id
        self.agent_id = agent_id
        self.token = token
        self.progress = 0

    def log(self, level: LogLevel, message: str, data: Optional[Any] = None) -> None:
        level = LogLevel(level)
        self.store.add_log(self.execution_id, level, message, data)
        logger.log(
            getattr(logging, level.value),
            f"{message} | execution_id={self.execution_id} | task_id={self.task_id}"
        )

    def update_progress(self, percent: float) -> int:
        self.progress = max(0, min(100, int(round(percent))))
        self.store.set_execution_progress(self.execution_id, self.progress)
        self.bus.emit(
            AgentEventType.EXECUTION_PROGRESS,
            {"progress": self.progress},
            execution_id=self.execution_id,
            task_id=self.task_id,
            agent_id=self.agent_id,
        )
        return self.progress

    def request_human_review(self, reason: str) -> bool:
        """Suspend this execution (PAUSED) until a human resumes or cancels it"""
        self.log(LogLevel.WARNING, f"Human review requested: {reason}", {"reason": reason})
        paused = self.store.transition_execution(
            self.execution_id, [ExecutionStatus.RUNNING], ExecutionStatus.PAUSED
        )
        self.token.cancel(CancellationToken.PAUSED)
        if paused:
            self.bus.emit(
                AgentEventType.EXECUTION_PAUSED,
                {"reason": reason, "requested_by": "capability"},
                execution_id=self.execution_id,
                task_id=self.task_id,
                agent_id=self.agent_id,
            )
        return paused

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled
