from .pacing import PaceLimiter
from .registry import RunRegistry
from .runner import PipelineRunner
from .state import RunAborted, RunAlreadyActive, RunFailed, RunKind, RunState, SyncRun

__all__ = [
    "PaceLimiter",
    "PipelineRunner",
    "RunAborted",
    "RunAlreadyActive",
    "RunFailed",
    "RunKind",
    "RunRegistry",
    "RunState",
    "SyncRun",
]
