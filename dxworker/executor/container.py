"""Container supervisor: run the task inside ``docker run --rm``."""

from pathlib import Path

from dxworker.config.schema import ExecutionLimits
from dxworker.executor.base import OutputSink
from dxworker.executor.shell import ShellSupervisor
from dxworker.runtime.types import DOCKER, UNAVAILABLE, RuntimeInfo, RuntimeKind
from dxworker.tasks.errors import ExecutionError, RuntimeUnavailableError
from dxworker.tasks.models import ExecutionConfig, ExecutionResult, Task

CONTAINER_WORKDIR = "/workspace"


class ContainerSupervisor(ShellSupervisor):
    """Captures output like the shell path; timeouts escalate SIGTERM -> SIGKILL."""

    kind = RuntimeKind.CONTAINER
    escalate = True
    exit_label = "Container"

    def __init__(self, runtime: RuntimeInfo = UNAVAILABLE, limits: ExecutionLimits | None = None):
        super().__init__(limits)
        self.runtime = runtime

    def command_for(self, workdir: Path, config: ExecutionConfig, task: Task) -> list[str]:
        return build_docker_command(self.runtime.command or DOCKER, workdir, config, task)

    async def run(
        self,
        workdir: Path,
        config: ExecutionConfig,
        task: Task,
        sink: OutputSink | None = None,
    ) -> ExecutionResult:
        if not self.runtime.available:
            raise RuntimeUnavailableError(DOCKER)
        if not task.image:
            raise ExecutionError("Container task has no image (set executionConfig.dockerImage)")
        return await super().run(workdir, config, task, sink)


def build_docker_command(docker: str, workdir: Path, config: ExecutionConfig, task: Task) -> list[str]:
    """Assemble the ``docker run`` argument vector for a task."""
    argv = [
        docker, "run", "--rm",
        "-v", f"{workdir.resolve()}:{CONTAINER_WORKDIR}",
        "-w", CONTAINER_WORKDIR,
    ]
    for key, value in config.environment.items():
        argv += ["-e", f"{key}={value}"]
    for host, container in config.volumes.items():
        argv += ["-v", f"{host}:{container}"]
    for host, container in config.ports.items():
        argv += ["-p", f"{host}:{container}"]
    argv.append(task.image or "")

    command = config.docker_command or config.command or task.command
    if command:
        argv += ["sh", "-c", command]
    return argv
