"""
Interpreted-script supervisor.

Finds the task's script in the working directory, runs it with the detected
interpreter and streams its output. A ``result.json`` written by the script
takes precedence over the raw captured text.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from dxworker.config.schema import ExecutionLimits
from dxworker.executor.base import OutputSink, ProcessOutcome, ProcessSupervisor, merge_env
from dxworker.executor.venv import isolated_environment
from dxworker.runtime.types import NODE, PYTHON, RuntimeInfo, RuntimeKind
from dxworker.tasks.errors import ExecutionError, ScriptNotFoundError, TaskTimeoutError
from dxworker.tasks.models import ExecutionConfig, ExecutionResult, OutputChunk, Task

RESULT_FILE = "result.json"
DEFAULT_SUCCESS_MESSAGE = "Task completed successfully"


@dataclass(frozen=True)
class ScriptLanguage:
    """Per-language differences between script runtimes."""
    runtime: str
    extension: str
    default_command: str
    env: dict[str, str] = field(default_factory=dict)
    # Environment variable pointed at bundled third-party package directories.
    path_var: str | None = None
    package_dirs: tuple[str, ...] = ()
    entry_points: tuple[str, ...] = ("main", "index", "script", "run", "task")
    isolated_env: bool = False


PYTHON_LANGUAGE = ScriptLanguage(
    runtime=PYTHON,
    extension=".py",
    default_command="python3",
    env={"PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"},
    path_var="PYTHONPATH",
    package_dirs=("packages", "site-packages", "lib", "vendor"),
    isolated_env=True,
)

NODE_LANGUAGE = ScriptLanguage(
    runtime=NODE,
    extension=".js",
    default_command="node",
    path_var="NODE_PATH",
    package_dirs=("node_modules",),
)

# Registration table for script runtimes; new languages plug in here.
SCRIPT_LANGUAGES: dict[str, ScriptLanguage] = {
    PYTHON_LANGUAGE.runtime: PYTHON_LANGUAGE,
    NODE_LANGUAGE.runtime: NODE_LANGUAGE,
}


def find_script(workdir: Path, extension: str, entry_points: tuple[str, ...] = ()) -> Path:
    """Pick the one script to run from the top level of ``workdir``."""
    candidates = sorted(
        p for p in workdir.iterdir()
        if p.is_file() and p.suffix.lower() == extension
    )
    if not candidates:
        contents = sorted(p.name + ("/" if p.is_dir() else "") for p in workdir.iterdir())
        listing = ", ".join(contents) if contents else "(empty)"
        raise ScriptNotFoundError(f"No {extension} file found in {workdir}. Contents: {listing}")
    by_stem = {p.stem.lower(): p for p in candidates}
    for stem in entry_points:
        if stem in by_stem:
            return by_stem[stem]
    return candidates[0]


def read_result_file(workdir: Path) -> dict[str, Any] | None:
    """Parse the structured result file if the script wrote one."""
    path = workdir / RESULT_FILE
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {RESULT_FILE} in {workdir}: {e}")
        return None
    return data if isinstance(data, dict) else {"result": data}


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def build_result(outcome: ProcessOutcome, structured: dict[str, Any] | None) -> ExecutionResult:
    """Map exit code, captured output and result file to a result or an error."""
    structured = structured or {}
    if outcome.returncode == 0:
        for key in ("result", "output"):
            if structured.get(key) is not None:
                return ExecutionResult(_stringify(structured[key]), outcome.execution_time)
        stdout = outcome.stdout.strip()
        return ExecutionResult(stdout or DEFAULT_SUCCESS_MESSAGE, outcome.execution_time)

    if structured.get("error") is not None:
        raise ExecutionError(_stringify(structured["error"]))
    stderr = outcome.stderr.strip()
    if stderr:
        raise ExecutionError(stderr)
    raise ExecutionError(f"Process exited with code {outcome.returncode}")


class ScriptSupervisor(ProcessSupervisor):
    """Runs one interpreted script with streamed output and a timeout."""

    kind = RuntimeKind.SCRIPT

    def __init__(
        self,
        language: ScriptLanguage,
        runtime: RuntimeInfo,
        limits: ExecutionLimits | None = None,
    ):
        super().__init__(limits)
        self.language = language
        self.runtime = runtime

    @property
    def interpreter(self) -> str:
        return self.runtime.command or self.language.default_command

    def build_env(self, workdir: Path, config: ExecutionConfig) -> dict[str, str]:
        lang_env = dict(self.language.env)
        if self.language.path_var:
            bundled = [str(workdir / d) for d in self.language.package_dirs if (workdir / d).is_dir()]
            existing = os.environ.get(self.language.path_var)
            if bundled:
                lang_env[self.language.path_var] = os.pathsep.join(
                    bundled + ([existing] if existing else [])
                )
        return merge_env(os.environ, lang_env, config.environment)

    async def run(
        self,
        workdir: Path,
        config: ExecutionConfig,
        task: Task,
        sink: OutputSink | None = None,
    ) -> ExecutionResult:
        script = find_script(workdir, self.language.extension, self.language.entry_points)
        env = self.build_env(workdir, config)

        if not self.language.isolated_env:
            return await self._run_script([self.interpreter, script.name], workdir, env, config, task, sink)

        async with isolated_environment(
            workdir,
            self.interpreter,
            limits=self.limits,
            task_id=task.id,
            sink=sink,
        ) as venv:
            interpreter = self.interpreter
            if venv is not None:
                interpreter = str(venv.python)
                env = merge_env(env, venv.env(env))
            return await self._run_script([interpreter, script.name], workdir, env, config, task, sink)

    async def _run_script(
        self,
        argv: list[str],
        workdir: Path,
        env: dict[str, str],
        config: ExecutionConfig,
        task: Task,
        sink: OutputSink | None,
    ) -> ExecutionResult:
        logger.info(f"Task [{task.id}] running {' '.join(argv)} (timeout={config.timeout or 'none'})")
        process = await self._spawn(argv, cwd=workdir, env=env, task_id=task.id, sink=sink)
        outcome = await self._supervise(process, timeout=config.timeout, escalate=True, sink=sink)

        if outcome.timed_out:
            if sink is not None:
                sink(OutputChunk("stderr", f"Task timed out after {config.timeout:g} seconds\n"))
            raise TaskTimeoutError(config.timeout or 0)

        logger.info(f"Task [{task.id}] exited with code {outcome.returncode} after {outcome.elapsed:.1f}s")
        return build_result(outcome, read_result_file(workdir))
