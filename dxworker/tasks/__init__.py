"""Task model, bundle materialization and output streaming."""

from dxworker.tasks.bundle import BundleMaterializer
from dxworker.tasks.errors import (
    ExecutionError,
    MaterializationError,
    RuntimeUnavailableError,
    ScriptNotFoundError,
    TaskError,
    TaskTimeoutError,
    UnsupportedRuntimeError,
)
from dxworker.tasks.models import ExecutionConfig, ExecutionResult, OutputChunk, Task, TaskOutcome
from dxworker.tasks.stream import OutputStreamer

__all__ = [
    "BundleMaterializer",
    "ExecutionConfig",
    "ExecutionError",
    "ExecutionResult",
    "MaterializationError",
    "OutputChunk",
    "OutputStreamer",
    "RuntimeUnavailableError",
    "ScriptNotFoundError",
    "Task",
    "TaskError",
    "TaskOutcome",
    "TaskTimeoutError",
    "UnsupportedRuntimeError",
]
