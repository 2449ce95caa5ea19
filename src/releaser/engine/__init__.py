# src/releaser/engine/__init__.py
"""
Execution engine for the releaser.

- scheduler: claim/launch, drain loop, single-flight guard
- executor: runs the release action with timeout escalation, writes the outcome
- recovery: crash recovery at startup
"""

from .executor import ExecutionResult, Executor
from .recovery import run_recovery
from .scheduler import Scheduler, SchedulerConfig

__all__ = ["ExecutionResult", "Executor", "Scheduler", "SchedulerConfig", "run_recovery"]
