# aios/models/queue.py
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from .database import Base


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AgentQueue(Base):
    """Scheduled (task, agent) work item

    Retry bookkeeping:
    - attempts: incremented on every claim
    - max_attempts: failures beyond this mark the entry FAILED
    - scheduled_for: not-before gate, NULL means immediately eligible
    """
    __tablename__ = "agent_queue"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=0)
    scheduled_for = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value, index=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
