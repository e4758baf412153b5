# aios/exceptions.py
"""
AIOS error taxonomy

NotFoundError          - missing task / agent / execution / orchestration
InvalidStateTransition - e.g. pausing an execution that is not RUNNING
CapabilityFailure      - business failure reported by a Capability (success=False)
ReviewInconclusive     - phase review response without a verdict token
DependencyCycleError   - circular dependencies between tasks of a plan
"""

from typing import Any, Dict, List, Optional


class AIOSError(Exception):
    """Base class for orchestrator core errors"""


class NotFoundError(AIOSError):
    """Raised when a persisted record does not exist"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateTransition(AIOSError):
    """Raised when an action is not allowed from the current state"""

    def __init__(self, entity_id: str, from_state: Any, action: str):
        self.entity_id = entity_id
        self.from_state = getattr(from_state, "value", from_state)
        self.action = action
        super().__init__(
            f"Cannot {action} {entity_id}: current state is {self.from_state}"
        )


class CapabilityFailure(AIOSError):
    """A Capability reported success=False"""

    def __init__(self, capability: str, error: Optional[str]):
        self.capability = capability
        self.error = error
        super().__init__(f"Capability '{capability}' failed: {error}")


class ReviewInconclusive(AIOSError):
    """The phase review response carried no APPROVED/REJECTED verdict"""

    def __init__(self, response: str):
        self.response = response
        first_line = response.strip().splitlines()[0] if response.strip() else ""
        super().__init__(f"Review verdict missing or unparsable: {first_line[:80]!r}")


class DependencyCycleError(AIOSError):
    """Raised when task dependencies form a cycle"""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependencies detected: {' -> '.join(cycle)}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "dependency_cycle", "cycle": self.cycle}
