# aios/events.py
"""
Event Bus - typed pub/sub with bounded history

Every component emits through one EventBus instance owned by the Runtime.
Emission is synchronous: type-specific listeners run first, then wildcard
listeners. A listener that raises is logged and skipped.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger("aios.events")

WILDCARD = "*"


class AgentEventType(str, Enum):
    """Event taxonomy"""
    EXECUTION_STARTED = "execution.started"
    EXECUTION_PROGRESS = "execution.progress"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_PAUSED = "execution.paused"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_CANCELLED = "execution.cancelled"
    QUEUE_ADDED = "queue.added"
    QUEUE_PROCESSED = "queue.processed"
    AGENT_IDLE = "agent.idle"
    AGENT_BUSY = "agent.busy"


@dataclass
class EventPayload:
    """One emitted event"""
    type: AgentEventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    execution_id: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "execution_id": self.execution_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
        }


Listener = Callable[[EventPayload], Any]
EventKey = Union[AgentEventType, str]


class EventBus:
    """Synchronous fan-out with a ring buffer of the last max_history events"""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._listeners: Dict[str, List[Listener]] = {}
        self._history: Deque[EventPayload] = deque(maxlen=max_history)

    @staticmethod
    def _key(event_type: EventKey) -> str:
        if isinstance(event_type, AgentEventType):
            return event_type.value
        return event_type

    def on(self, event_type: EventKey, callback: Listener) -> None:
        """Subscribe to one event type, or to everything with "*" """
        self._listeners.setdefault(self._key(event_type), []).append(callback)

    def off(self, event_type: EventKey, callback: Listener) -> None:
        listeners = self._listeners.get(self._key(event_type))
        if listeners and callback in listeners:
            listeners.remove(callback)

    def emit(
        self,
        event_type: AgentEventType,
        data: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> EventPayload:
        payload = EventPayload(
            type=event_type,
            data=data or {},
            execution_id=execution_id,
            task_id=task_id,
            agent_id=agent_id,
        )
        self._history.append(payload)

        targets = list(self._listeners.get(event_type.value, []))
        targets += self._listeners.get(WILDCARD, [])
        for listener in targets:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Event listener failed | event={event_type.value} | error={e}")

        return payload

    def get_history(self, limit: int = 100) -> List[EventPayload]:
        """Most recent events, oldest first"""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def listener_count(self, event_type: Optional[EventKey] = None) -> int:
        if event_type is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(self._key(event_type), []))
