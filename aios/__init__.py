# AIOS - agent task orchestration core
"""
Queue, dependency resolution, execution engine and phase gates for
role-based agents. Build a wired instance with aios.runtime.build_runtime().
"""

__version__ = "0.1.0"
