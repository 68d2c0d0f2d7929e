"""Run recording orchestration."""

from .recorder import RunExecutionError, RunRecorder, RunResult, RunState
from .workspace import Workspace

__all__ = [
    "RunExecutionError",
    "RunRecorder",
    "RunResult",
    "RunState",
    "Workspace",
]
