# AIOS Models Package
from .database import Base, create_db_engine, create_session_factory, init_db
from .task import (
    Task,
    TaskComment,
    TaskStatus,
    TaskPriority,
    Orchestration,
    OrchestrationStatus,
    task_dependencies,
    priority_to_number,
)
from .agent import (
    Agent,
    AgentRole,
    AgentExecution,
    ExecutionStatus,
    ExecutionLog,
    ExecutionFeedback,
    LogLevel,
)
from .queue import AgentQueue, QueueStatus

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "Task",
    "TaskComment",
    "TaskStatus",
    "TaskPriority",
    "Orchestration",
    "OrchestrationStatus",
    "task_dependencies",
    "priority_to_number",
    "Agent",
    "AgentRole",
    "AgentExecution",
    "ExecutionStatus",
    "ExecutionLog",
    "ExecutionFeedback",
    "LogLevel",
    "AgentQueue",
    "QueueStatus",
]
