"""
Shared process supervision: spawn, pump output, enforce timeouts.

Every supervisor variant funnels its child process through
``ProcessSupervisor._supervise``. Output is read incrementally from both
pipes; a watchdog coroutine enforces the deadline and is cancelled as soon
as the process exits on its own, so a finished process is never touched.

Children are started in their own session (POSIX) so a timeout can signal
the whole process group, including grandchildren spawned by a shell.
"""

import asyncio
import codecs
import contextlib
import os
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from loguru import logger

from dxworker.config.schema import ExecutionLimits
from dxworker.runtime.types import RuntimeKind
from dxworker.tasks.errors import ExecutionError
from dxworker.tasks.models import ExecutionConfig, ExecutionResult, OutputChunk, StreamName, Task

OutputSink = Callable[[OutputChunk], None]

_READ_SIZE = 4096
_POSIX = os.name != "nt"


@dataclass
class ProcessOutcome:
    """What happened to one child process."""
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    overflowed: bool = False
    elapsed: float = 0.0

    @property
    def execution_time(self) -> int:
        return int(self.elapsed)


def merge_env(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge environment layers; later layers win."""
    env: dict[str, str] = {}
    for layer in layers:
        if layer:
            env.update({str(k): str(v) for k, v in layer.items()})
    return env


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if _POSIX:
            os.killpg(os.getpgid(process.pid), sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()


class ProcessSupervisor(ABC):
    """Base for the per-runtime supervisors."""

    kind: RuntimeKind

    def __init__(self, limits: ExecutionLimits | None = None):
        self.limits = limits or ExecutionLimits()

    @abstractmethod
    async def run(
        self,
        workdir: Path,
        config: ExecutionConfig,
        task: Task,
        sink: OutputSink | None = None,
    ) -> ExecutionResult:
        """Execute the task in ``workdir`` and return its result."""

    async def _spawn(
        self,
        argv: list[str] | str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        task_id: str,
        sink: OutputSink | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a child (``argv`` as a string runs through the host shell)."""
        kwargs = dict(
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,
        )
        try:
            if isinstance(argv, str):
                process = await asyncio.create_subprocess_shell(argv, **kwargs)
            else:
                process = await asyncio.create_subprocess_exec(*argv, **kwargs)
        except OSError as e:
            message = f"Failed to start process: {e}"
            logger.error(f"Task [{task_id}] {message}")
            if sink is not None:
                sink(OutputChunk("stderr", message + "\n"))
            raise ExecutionError(message) from e

        logger.debug(f"Task [{task_id}] spawned pid {process.pid}")
        return process

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL once the grace period runs out."""
        _send_signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.limits.kill_grace_period)
        except asyncio.TimeoutError:
            _send_signal(process, signal.SIGKILL)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        *,
        timeout: float | None,
        escalate: bool,
        sink: OutputSink | None = None,
        max_output: int | None = None,
    ) -> ProcessOutcome:
        """Collect output until the process exits, enforcing the deadline."""
        outcome = ProcessOutcome()
        started = time.monotonic()
        captured: dict[StreamName, list[str]] = {"stdout": [], "stderr": []}
        total = 0

        async def _pump(reader: asyncio.StreamReader | None, name: StreamName) -> None:
            nonlocal total
            if reader is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                raw = await reader.read(_READ_SIZE)
                text = decoder.decode(raw, final=not raw)
                if text:
                    captured[name].append(text)
                    if sink is not None:
                        sink(OutputChunk(name, text))
                if not raw:
                    break
                total += len(raw)
                if max_output is not None and total > max_output and not outcome.overflowed:
                    outcome.overflowed = True
                    _send_signal(process, signal.SIGKILL)

        async def _watchdog(deadline: float) -> None:
            await asyncio.sleep(deadline)
            if process.returncode is not None:
                return
            outcome.timed_out = True
            if escalate:
                await self._terminate(process)
            else:
                _send_signal(process, signal.SIGKILL)

        watchdog = asyncio.create_task(_watchdog(timeout)) if timeout else None
        try:
            await asyncio.gather(_pump(process.stdout, "stdout"), _pump(process.stderr, "stderr"))
            outcome.returncode = await process.wait()
        except asyncio.CancelledError:
            _send_signal(process, signal.SIGKILL)
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watchdog

        outcome.elapsed = time.monotonic() - started
        outcome.stdout = "".join(captured["stdout"])
        outcome.stderr = "".join(captured["stderr"])
        return outcome
