"""
Task executor: materialize, pick a supervisor, run, stream.

One call to ``execute`` handles one task end to end and either returns an
``ExecutionResult`` or raises a ``TaskError``. There are no retries here;
retry policy belongs to the control plane.
"""

import functools
from typing import Awaitable, Callable

from loguru import logger

from dxworker.config.schema import Config
from dxworker.executor.base import ProcessSupervisor
from dxworker.executor.container import ContainerSupervisor
from dxworker.executor.script import SCRIPT_LANGUAGES, ScriptSupervisor
from dxworker.executor.shell import ShellSupervisor
from dxworker.runtime.types import DOCKER, PYTHON, SHELL, UNAVAILABLE, RuntimeInfo, RuntimeKind, canonical_runtime
from dxworker.tasks.bundle import BundleMaterializer
from dxworker.tasks.errors import RuntimeUnavailableError, UnsupportedRuntimeError
from dxworker.tasks.models import ExecutionResult, OutputChunk, Task
from dxworker.tasks.stream import OutputStreamer

SendOutput = Callable[[str, list[OutputChunk]], Awaitable[None]]

DEFAULT_RUNTIME = PYTHON


async def _discard(task_id: str, chunks: list[OutputChunk]) -> None:
    return None


class TaskExecutor:
    """Runs tasks against the runtimes detected at startup."""

    def __init__(
        self,
        config: Config,
        runtimes: dict[str, RuntimeInfo],
        materializer: BundleMaterializer | None = None,
        send_output: SendOutput | None = None,
        echo: bool = True,
    ):
        self.config = config
        self.limits = config.execution
        self.runtimes = dict(runtimes)
        self.materializer = materializer or BundleMaterializer(
            config.work_path,
            download_timeout=self.limits.download_timeout,
        )
        self.send_output = send_output or _discard
        self.echo = echo

    def resolve_runtime(self, task: Task) -> str:
        """Runtime name for a non-container task: config, task, then defaults."""
        name = task.config.runtime or task.runtime
        if not name:
            name = SHELL if task.is_bare_command else DEFAULT_RUNTIME
        return canonical_runtime(name)

    def resolve_kind(self, task: Task) -> tuple[RuntimeKind, str]:
        if task.wants_container:
            return RuntimeKind.CONTAINER, DOCKER
        name = self.resolve_runtime(task)
        if name == SHELL:
            return RuntimeKind.SHELL, name
        if name == DOCKER:
            return RuntimeKind.CONTAINER, name
        return RuntimeKind.SCRIPT, name

    def select_supervisor(self, task: Task) -> ProcessSupervisor:
        """Pick and build the supervisor; raises before anything is spawned."""
        kind, name = self.resolve_kind(task)
        if kind is RuntimeKind.SHELL:
            # The host shell is always considered available.
            return ShellSupervisor(self.limits)
        if kind is RuntimeKind.CONTAINER:
            return ContainerSupervisor(self.runtimes.get(DOCKER, UNAVAILABLE), self.limits)

        info = self.runtimes.get(name, UNAVAILABLE)
        if not info.available:
            raise RuntimeUnavailableError(name)
        language = SCRIPT_LANGUAGES.get(name)
        if language is None:
            raise UnsupportedRuntimeError(name)
        return ScriptSupervisor(language, info, self.limits)

    async def execute(self, task: Task) -> ExecutionResult:
        workdir = await self.materializer.materialize(task)
        supervisor = self.select_supervisor(task)
        logger.info(f"Task [{task.id}] dispatching to {supervisor.kind.value} supervisor")

        streamer = OutputStreamer(
            task.id,
            functools.partial(self.send_output, task.id),
            stdout_threshold=self.limits.stdout_flush_threshold,
            stderr_threshold=self.limits.stderr_flush_threshold,
            echo=self.echo,
        )
        async with streamer:
            return await supervisor.run(workdir, task.config, task, sink=streamer.emit)
