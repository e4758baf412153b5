# aios/models/agent.py
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class AgentRole(str, Enum):
    MAESTRO = "MAESTRO"          # planning and coordination
    SENTINEL = "SENTINEL"        # quality, review, tests
    ARCHITECTON = "ARCHITECTON"  # systems architecture
    PIXEL = "PIXEL"              # interface design


class ExecutionStatus(str, Enum):
    """AgentExecution states"""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Agent(Base):
    """Role-specific actor; read-only to the orchestrator core"""
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    name = Column(String(100), nullable=False)
    role = Column(String(20), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class AgentExecution(Base):
    """One attempt of (Task x Agent)"""
    __tablename__ = "agent_executions"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ExecutionStatus.QUEUED.value)
    progress = Column(Integer, default=0)
    result = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    artifacts_json = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExecutionLog(Base):
    """Append-only observability trail for an execution"""
    __tablename__ = "execution_logs"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    execution_id = Column(String(36), ForeignKey("agent_executions.id"), nullable=False, index=True)
    level = Column(String(10), nullable=False, default=LogLevel.INFO.value)
    message = Column(Text, nullable=False)
    data_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ExecutionFeedback(Base):
    """Human rating of a finished execution, used to enrich later prompts"""
    __tablename__ = "execution_feedback"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    execution_id = Column(String(36), ForeignKey("agent_executions.id"), nullable=False, unique=True)
    rating = Column(Integer, nullable=False)
    was_accepted = Column(Boolean, nullable=False)
    comments = Column(Text, nullable=True)
    improvements_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
