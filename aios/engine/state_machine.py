# aios/engine/state_machine.py
"""
AgentExecution state machine

    QUEUED  -start->   RUNNING
    RUNNING -success-> COMPLETED
    RUNNING -failure-> FAILED
    RUNNING -pause->   PAUSED
    PAUSED  -resume->  RUNNING
    {QUEUED, RUNNING, PAUSED} -cancel-> CANCELLED

COMPLETED, FAILED and CANCELLED are terminal.
"""

from typing import Dict, Set

from aios.exceptions import InvalidStateTransition
from aios.models import ExecutionStatus

VALID_TRANSITIONS: Dict[ExecutionStatus, Set[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.PAUSED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.PAUSED: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}

TERMINAL_STATES: Set[ExecutionStatus] = {
    state for state, targets in VALID_TRANSITIONS.items() if not targets
}


def sources_for(target: ExecutionStatus) -> Set[ExecutionStatus]:
    """States from which target is reachable in one step"""
    return {state for state, targets in VALID_TRANSITIONS.items() if target in targets}


def can_transition(from_state: ExecutionStatus, to_state: ExecutionStatus) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def require_transition(execution_id: str, current: str, target: ExecutionStatus, action: str) -> ExecutionStatus:
    """
    Validate an action against the current persisted status.

    Raises:
        InvalidStateTransition: If target is not reachable from current
    """
    state = ExecutionStatus(current)
    if not can_transition(state, target):
        raise InvalidStateTransition(execution_id, state, action)
    return state
