"""Shell-command supervisor: run a command string through the host shell."""

import os
from pathlib import Path

from loguru import logger

from dxworker.executor.base import OutputSink, ProcessSupervisor, merge_env
from dxworker.runtime.types import RuntimeKind
from dxworker.tasks.errors import ExecutionError, TaskTimeoutError
from dxworker.tasks.models import ExecutionConfig, ExecutionResult, Task

FALLBACK_COMMAND = 'echo "No command specified"'


class ShellSupervisor(ProcessSupervisor):
    """Captures a command's output in full; nothing is streamed."""

    kind = RuntimeKind.SHELL
    escalate = False  # killed outright at the deadline
    exit_label = "Command"

    def command_for(self, workdir: Path, config: ExecutionConfig, task: Task) -> list[str] | str:
        return config.command or task.command or FALLBACK_COMMAND

    async def run(
        self,
        workdir: Path,
        config: ExecutionConfig,
        task: Task,
        sink: OutputSink | None = None,
    ) -> ExecutionResult:
        argv = self.command_for(workdir, config, task)
        timeout = config.timeout or self.limits.shell_timeout
        env = merge_env(os.environ, config.environment)
        shown = argv if isinstance(argv, str) else " ".join(argv)
        logger.info(f"Task [{task.id}] {self.kind.value}: {shown} (timeout={timeout:g}s)")

        process = await self._spawn(argv, cwd=workdir, env=env, task_id=task.id, sink=sink)
        outcome = await self._supervise(
            process,
            timeout=timeout,
            escalate=self.escalate,
            max_output=self.limits.max_output_bytes,
        )

        if outcome.overflowed:
            raise ExecutionError(f"Output exceeded {self.limits.max_output_bytes} bytes")
        if outcome.timed_out:
            raise TaskTimeoutError(timeout)

        logger.info(f"Task [{task.id}] {self.exit_label.lower()} exited with code {outcome.returncode}")
        if outcome.returncode == 0:
            return ExecutionResult(outcome.stdout.strip(), outcome.execution_time)
        stderr = outcome.stderr.strip()
        raise ExecutionError(stderr or f"{self.exit_label} exited with code {outcome.returncode}")
