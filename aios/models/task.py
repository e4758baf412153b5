# aios/models/task.py
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table, Text

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    """Task workflow states"""
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"
    BLOCKED = "BLOCKED"


class TaskPriority(str, Enum):
    URGENT = "URGENT"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


PRIORITY_WEIGHTS = {
    TaskPriority.URGENT: 10,
    TaskPriority.HIGH: 7,
    TaskPriority.MEDIUM: 4,
    TaskPriority.LOW: 1,
}


def priority_to_number(priority) -> int:
    """Numeric queue priority for a task priority (MEDIUM when unknown)"""
    try:
        return PRIORITY_WEIGHTS[TaskPriority(priority)]
    except ValueError:
        return PRIORITY_WEIGHTS[TaskPriority.MEDIUM]


class OrchestrationStatus(str, Enum):
    PLANNING = "PLANNING"
    CREATING_SUBTASKS = "CREATING_SUBTASKS"
    ASSIGNING_AGENTS = "ASSIGNING_AGENTS"
    EXECUTING = "EXECUTING"
    REVIEWING = "REVIEWING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Many-to-many: task_id depends on depends_on_id
task_dependencies = Table(
    "task_dependencies",
    Base.metadata,
    Column("task_id", String(36), ForeignKey("tasks.id"), primary_key=True),
    Column("depends_on_id", String(36), ForeignKey("tasks.id"), primary_key=True),
)


class Task(Base):
    """Unit of work assigned to an agent, optionally part of an orchestration"""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=TaskStatus.TODO.value)
    priority = Column(String(20), nullable=False, default=TaskPriority.MEDIUM.value)
    orchestration_id = Column(String(36), ForeignKey("orchestrations.id"), nullable=True, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=True, index=True)
    auto_created = Column(Boolean, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)


class TaskComment(Base):
    """Human-readable note attached to a task (execution outcomes, reviews)"""
    __tablename__ = "task_comments"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    author_name = Column(String(100), nullable=False)
    author_type = Column(String(20), nullable=False, default="AGENT")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Orchestration(Base):
    """Parent task decomposed into a phased plan of subtasks

    plan_json holds {"phases": [{"name": ..., "subtasks": [{"title": ...}, ...]}, ...]}
    current_phase is a human-readable progress line or rejection reason.
    """
    __tablename__ = "orchestrations"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    parent_task_id = Column(String(36), nullable=True, index=True)
    status = Column(String(30), nullable=False, default=OrchestrationStatus.PLANNING.value)
    plan_json = Column(Text, nullable=True)
    current_phase = Column(Text, nullable=True)
    total_subtasks = Column(Integer, default=0)
    completed_subtasks = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
