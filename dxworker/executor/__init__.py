"""Task execution: supervisors per runtime and the executor that picks one."""

from dxworker.executor.base import ProcessSupervisor
from dxworker.executor.container import ContainerSupervisor
from dxworker.executor.executor import TaskExecutor
from dxworker.executor.script import SCRIPT_LANGUAGES, ScriptLanguage, ScriptSupervisor
from dxworker.executor.shell import ShellSupervisor

__all__ = [
    "ProcessSupervisor",
    "ScriptSupervisor",
    "ScriptLanguage",
    "SCRIPT_LANGUAGES",
    "ShellSupervisor",
    "ContainerSupervisor",
    "TaskExecutor",
]
