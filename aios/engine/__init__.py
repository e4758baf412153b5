# aios/engine/__init__.py
"""
AIOS Execution Engine
Capability dispatch, execution state machine and orchestration worker pool and loop
"""

from .context import (
    Capability,
    CapabilityRegistry,
    CancellationToken,
    ExecutionContext,
    ExecutionResult,
)
from .state_machine import VALID_TRANSITIONS, TERMINAL_STATES, can_transition
from .execution_engine import ExecutionEngine, LoopStats, ROLE_SYSTEM_PROMPTS

__all__ = [
    "Capability",
    "CapabilityRegistry",
    "CancellationToken",
    "ExecutionContext",
    "ExecutionResult",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "can_transition",
    "ExecutionEngine",
    "LoopStats",
    "ROLE_SYSTEM_PROMPTS",
]
