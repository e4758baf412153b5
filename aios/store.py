# aios/store.py
"""
Work Store - persisted Task / Agent / AgentExecution / AgentQueue /
Orchestration / ExecutionLog records behind short-lived sessions.

Every operation opens its own session and commits before returning, so each
call is an atomic request/response from the caller's point of view. Status
writes that must not regress use conditional updates (expected source state
in the WHERE clause) and report whether a row changed.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from aios.exceptions import NotFoundError
from aios.models import (
    Agent,
    AgentExecution,
    AgentQueue,
    ExecutionFeedback,
    ExecutionLog,
    ExecutionStatus,
    Orchestration,
    QueueStatus,
    Task,
    TaskComment,
    TaskPriority,
    TaskStatus,
    task_dependencies,
)

logger = logging.getLogger("aios.store")


def _v(value: Any) -> Any:
    """Enum members are stored by value"""
    return value.value if isinstance(value, Enum) else value


def _values(values: Iterable[Any]) -> List[Any]:
    return [_v(v) for v in values]


class WorkStore:
    """Repository over the relational work records"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session scope: commit on success, rollback on error"""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        status: TaskStatus = TaskStatus.TODO,
        priority: TaskPriority = TaskPriority.MEDIUM,
        orchestration_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        auto_created: bool = False,
        depends_on: Optional[List[str]] = None,
    ) -> Task:
        with self.session() as db:
            task = Task(
                title=title,
                description=description,
                status=_v(status),
                priority=_v(priority),
                orchestration_id=orchestration_id,
                agent_id=agent_id,
                auto_created=auto_created,
            )
            db.add(task)
            db.flush()
            for dep_id in depends_on or []:
                db.execute(task_dependencies.insert().values(task_id=task.id, depends_on_id=dep_id))
            return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self.session() as db:
            return db.query(Task).filter(Task.id == task_id).first()

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def list_tasks(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[Any]] = None,
        titles: Optional[Iterable[str]] = None,
    ) -> List[Task]:
        with self.session() as db:
            query = db.query(Task)
            if orchestration_id is not None:
                query = query.filter(Task.orchestration_id == orchestration_id)
            if statuses is not None:
                query = query.filter(Task.status.in_(_values(statuses)))
            if titles is not None:
                query = query.filter(Task.title.in_(list(titles)))
            return query.order_by(Task.created_at.asc()).all()

    def find_task_by_title(self, orchestration_id: str, title: str) -> Optional[Task]:
        with self.session() as db:
            return db.query(Task).filter(
                Task.orchestration_id == orchestration_id,
                Task.title == title
            ).first()

    def set_task_status(self, task_id: str, status: TaskStatus) -> None:
        with self.session() as db:
            values: Dict[str, Any] = {"status": _v(status), "updated_at": datetime.utcnow()}
            if _v(status) == TaskStatus.DONE.value:
                values["completed_at"] = datetime.utcnow()
            db.query(Task).filter(Task.id == task_id).update(values, synchronize_session=False)

    def set_tasks_status(self, task_ids: List[str], status: TaskStatus) -> int:
        if not task_ids:
            return 0
        with self.session() as db:
            return db.query(Task).filter(Task.id.in_(task_ids)).update(
                {"status": _v(status), "updated_at": datetime.utcnow()},
                synchronize_session=False
            )

    def count_tasks(self, orchestration_id: str, status: Optional[TaskStatus] = None) -> int:
        with self.session() as db:
            query = db.query(func.count(Task.id)).filter(Task.orchestration_id == orchestration_id)
            if status is not None:
                query = query.filter(Task.status == _v(status))
            return query.scalar() or 0

    def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        with self.session() as db:
            db.execute(task_dependencies.insert().values(task_id=task_id, depends_on_id=depends_on_id))

    def get_dependencies(self, task_id: str) -> List[Task]:
        """Tasks that task_id depends on"""
        with self.session() as db:
            return db.query(Task).join(
                task_dependencies, task_dependencies.c.depends_on_id == Task.id
            ).filter(task_dependencies.c.task_id == task_id).all()

    def get_dependents(self, task_id: str) -> List[Task]:
        """Tasks that list task_id as a dependency"""
        with self.session() as db:
            return db.query(Task).join(
                task_dependencies, task_dependencies.c.task_id == Task.id
            ).filter(task_dependencies.c.depends_on_id == task_id).all()

    def add_comment(self, task_id: str, content: str, author_name: str, author_type: str = "AGENT") -> TaskComment:
        with self.session() as db:
            comment = TaskComment(
                task_id=task_id,
                content=content,
                author_name=author_name,
                author_type=author_type,
            )
            db.add(comment)
            return comment

    def list_comments(self, task_id: str) -> List[TaskComment]:
        with self.session() as db:
            return db.query(TaskComment).filter(
                TaskComment.task_id == task_id
            ).order_by(TaskComment.created_at.asc()).all()

    # =========================================================================
    # Agents
    # =========================================================================

    def create_agent(self, name: str, role: Any, is_active: bool = True) -> Agent:
        with self.session() as db:
            agent = Agent(name=name, role=_v(role), is_active=is_active)
            db.add(agent)
            return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self.session() as db:
            return db.query(Agent).filter(Agent.id == agent_id).first()

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def find_agent_by_role(self, role: Any) -> Optional[Agent]:
        with self.session() as db:
            return db.query(Agent).filter(
                Agent.role == _v(role),
                Agent.is_active.is_(True)
            ).order_by(Agent.created_at.asc()).first()

    # =========================================================================
    # Executions
    # =========================================================================

    def create_execution(
        self,
        task_id: str,
        agent_id: str,
        status: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> AgentExecution:
        with self.session() as db:
            execution = AgentExecution(
                task_id=task_id,
                agent_id=agent_id,
                status=_v(status),
                progress=0,
                started_at=datetime.utcnow(),
            )
            db.add(execution)
            return execution

    def get_execution(self, execution_id: str) -> Optional[AgentExecution]:
        with self.session() as db:
            return db.query(AgentExecution).filter(AgentExecution.id == execution_id).first()

    def require_execution(self, execution_id: str) -> AgentExecution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def transition_execution(
        self,
        execution_id: str,
        from_states: Iterable[Any],
        to_state: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        """Conditional status write; False when the execution was not in from_states"""
        values: Dict[str, Any] = {"status": _v(to_state), "updated_at": datetime.utcnow()}
        if "artifacts" in fields:
            artifacts = fields.pop("artifacts")
            values["artifacts_json"] = json.dumps(artifacts) if artifacts else None
        values.update(fields)
        with self.session() as db:
            changed = db.query(AgentExecution).filter(
                AgentExecution.id == execution_id,
                AgentExecution.status.in_(_values(from_states))
            ).update(values, synchronize_session=False)
            return changed > 0

    def set_execution_progress(self, execution_id: str, progress: int) -> None:
        with self.session() as db:
            db.query(AgentExecution).filter(AgentExecution.id == execution_id).update(
                {"progress": progress, "updated_at": datetime.utcnow()},
                synchronize_session=False
            )

    def list_executions(
        self,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[Any]] = None,
    ) -> List[AgentExecution]:
        with self.session() as db:
            query = db.query(AgentExecution)
            if task_id is not None:
                query = query.filter(AgentExecution.task_id == task_id)
            if agent_id is not None:
                query = query.filter(AgentExecution.agent_id == agent_id)
            if statuses is not None:
                query = query.filter(AgentExecution.status.in_(_values(statuses)))
            return query.order_by(AgentExecution.created_at.desc()).all()

    def count_running_executions(self, orchestration_id: str) -> int:
        with self.session() as db:
            return db.query(func.count(AgentExecution.id)).join(
                Task, Task.id == AgentExecution.task_id
            ).filter(
                Task.orchestration_id == orchestration_id,
                AgentExecution.status == ExecutionStatus.RUNNING.value
            ).scalar() or 0

    # =========================================================================
    # Execution logs
    # =========================================================================

    def add_log(self, execution_id: str, level: Any, message: str, data: Optional[Any] = None) -> None:
        with self.session() as db:
            db.add(ExecutionLog(
                execution_id=execution_id,
                level=_v(level),
                message=message,
                data_json=json.dumps(data, default=str) if data is not None else None,
            ))

    def list_logs(self, execution_id: str) -> List[ExecutionLog]:
        with self.session() as db:
            return db.query(ExecutionLog).filter(
                ExecutionLog.execution_id == execution_id
            ).order_by(ExecutionLog.created_at.asc()).all()

    # =========================================================================
    # Queue
    # =========================================================================

    def create_queue_entry(
        self,
        task_id: str,
        agent_id: str,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> AgentQueue:
        with self.session() as db:
            entry = AgentQueue(
                task_id=task_id,
                agent_id=agent_id,
                priority=priority,
                scheduled_for=scheduled_for,
                max_attempts=max_attempts,
                attempts=0,
                status=QueueStatus.PENDING.value,
            )
            db.add(entry)
            return entry

    def get_queue_entry(self, entry_id: str) -> Optional[AgentQueue]:
        with self.session() as db:
            return db.query(AgentQueue).filter(AgentQueue.id == entry_id).first()

    def find_next_pending(self, now: datetime, agent_id: Optional[str] = None) -> Optional[AgentQueue]:
        """Highest priority first, then oldest; scheduled_for must have passed"""
        with self.session() as db:
            query = db.query(AgentQueue).filter(
                AgentQueue.status == QueueStatus.PENDING.value,
                (AgentQueue.scheduled_for.is_(None)) | (AgentQueue.scheduled_for <= now)
            )
            if agent_id is not None:
                query = query.filter(AgentQueue.agent_id == agent_id)
            return query.order_by(AgentQueue.priority.desc(), AgentQueue.created_at.asc()).first()

    def mark_queue_processing(self, entry_id: str) -> bool:
        """PENDING -> PROCESSING with attempts+1; False when another poller got there first"""
        with self.session() as db:
            changed = db.query(AgentQueue).filter(
                AgentQueue.id == entry_id,
                AgentQueue.status == QueueStatus.PENDING.value
            ).update(
                {
                    "status": QueueStatus.PROCESSING.value,
                    "attempts": AgentQueue.attempts + 1,
                    "updated_at": datetime.utcnow(),
                },
                synchronize_session=False
            )
            return changed > 0

    def finish_queue_entry(self, entry_id: str, status: QueueStatus, last_error: Optional[str] = None) -> bool:
        """PROCESSING -> COMPLETED | PENDING | FAILED"""
        values: Dict[str, Any] = {"status": _v(status), "updated_at": datetime.utcnow()}
        if last_error is not None:
            values["last_error"] = last_error
        with self.session() as db:
            changed = db.query(AgentQueue).filter(
                AgentQueue.id == entry_id,
                AgentQueue.status == QueueStatus.PROCESSING.value
            ).update(values, synchronize_session=False)
            return changed > 0

    def has_open_queue_entry(self, task_id: str) -> bool:
        with self.session() as db:
            return db.query(AgentQueue.id).filter(
                AgentQueue.task_id == task_id,
                AgentQueue.status.in_([QueueStatus.PENDING.value, QueueStatus.PROCESSING.value])
            ).first() is not None

    def queued_task_ids(self, task_ids: List[str]) -> set:
        """Subset of task_ids with a PENDING or PROCESSING queue entry"""
        if not task_ids:
            return set()
        with self.session() as db:
            rows = db.query(AgentQueue.task_id).filter(
                AgentQueue.task_id.in_(task_ids),
                AgentQueue.status.in_([QueueStatus.PENDING.value, QueueStatus.PROCESSING.value])
            ).all()
            return {row[0] for row in rows}

    def queue_counts(self) -> Dict[str, int]:
        with self.session() as db:
            rows = db.query(AgentQueue.status, func.count(AgentQueue.id)).group_by(AgentQueue.status).all()
            return {status: count for status, count in rows}

    def delete_queue_entries(self, task_id: Optional[str] = None, status: Optional[QueueStatus] = None) -> int:
        with self.session() as db:
            query = db.query(AgentQueue)
            if task_id is not None:
                query = query.filter(AgentQueue.task_id == task_id)
            if status is not None:
                query = query.filter(AgentQueue.status == _v(status))
            return query.delete(synchronize_session=False)

    # =========================================================================
    # Orchestrations
    # =========================================================================

    def create_orchestration(
        self,
        plan: Optional[Dict[str, Any]] = None,
        parent_task_id: Optional[str] = None,
        status: Any = "PLANNING",
    ) -> Orchestration:
        with self.session() as db:
            orchestration = Orchestration(
                parent_task_id=parent_task_id,
                status=_v(status),
                plan_json=json.dumps(plan) if plan is not None else None,
            )
            db.add(orchestration)
            return orchestration

    def get_orchestration(self, orchestration_id: str) -> Optional[Orchestration]:
        with self.session() as db:
            return db.query(Orchestration).filter(Orchestration.id == orchestration_id).first()

    def require_orchestration(self, orchestration_id: str) -> Orchestration:
        orchestration = self.get_orchestration(orchestration_id)
        if orchestration is None:
            raise NotFoundError("Orchestration", orchestration_id)
        return orchestration

    def get_plan(self, orchestration_id: str) -> Dict[str, Any]:
        orchestration = self.require_orchestration(orchestration_id)
        return json.loads(orchestration.plan_json) if orchestration.plan_json else {}

    def update_orchestration(self, orchestration_id: str, **fields: Any) -> None:
        values = {key: _v(value) for key, value in fields.items()}
        values["updated_at"] = datetime.utcnow()
        with self.session() as db:
            db.query(Orchestration).filter(Orchestration.id == orchestration_id).update(
                values, synchronize_session=False
            )

    # =========================================================================
    # Feedback
    # =========================================================================

    def upsert_feedback(
        self,
        execution_id: str,
        rating: int,
        was_accepted: bool,
        comments: Optional[str] = None,
        improvements: Optional[List[str]] = None,
    ) -> ExecutionFeedback:
        with self.session() as db:
            feedback = db.query(ExecutionFeedback).filter(
                ExecutionFeedback.execution_id == execution_id
            ).first()
            if feedback is None:
                feedback = ExecutionFeedback(execution_id=execution_id)
                db.add(feedback)
            feedback.rating = rating
            feedback.was_accepted = was_accepted
            feedback.comments = comments
            feedback.improvements_json = json.dumps(improvements or [])
            return feedback

    def list_agent_feedback(self, agent_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Recent feedback for an agent joined with the task title"""
        with self.session() as db:
            rows = db.query(ExecutionFeedback, Task.title).join(
                AgentExecution, AgentExecution.id == ExecutionFeedback.execution_id
            ).join(
                Task, Task.id == AgentExecution.task_id
            ).filter(
                AgentExecution.agent_id == agent_id
            ).order_by(ExecutionFeedback.created_at.desc()).limit(limit).all()
            return [
                {
                    "rating": feedback.rating,
                    "was_accepted": feedback.was_accepted,
                    "comments": feedback.comments,
                    "improvements": json.loads(feedback.improvements_json) if feedback.improvements_json else [],
                    "task_title": title,
                    "created_at": feedback.created_at,
                }
                for feedback, title in rows
            ]
