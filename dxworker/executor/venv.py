"""Throwaway virtual environments for Python tasks that ship a requirements.txt."""

import asyncio
import os
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Mapping

from loguru import logger

from dxworker.config.schema import ExecutionLimits
from dxworker.executor.base import OutputSink
from dxworker.runtime.probe import capture
from dxworker.tasks.models import OutputChunk

VENV_DIR = ".dxvenv"
REQUIREMENTS_FILE = "requirements.txt"


@dataclass(frozen=True)
class IsolatedEnvironment:
    """A created virtual environment and its interpreter."""
    path: Path
    python: Path

    @property
    def bin_dir(self) -> Path:
        return self.python.parent

    def env(self, base: Mapping[str, str]) -> dict[str, str]:
        """Variables that activate this environment for a child process."""
        path = base.get("PATH", "")
        return {
            "VIRTUAL_ENV": str(self.path),
            "PATH": os.pathsep.join(p for p in (str(self.bin_dir), path) if p),
        }


def has_requirements(workdir: Path) -> bool:
    """True when requirements.txt lists at least one requirement."""
    manifest = workdir / REQUIREMENTS_FILE
    if not manifest.is_file():
        return False
    try:
        lines = manifest.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return False
    return any(line.strip() and not line.strip().startswith("#") for line in lines)


def venv_python(path: Path) -> Path:
    if os.name == "nt":
        return path / "Scripts" / "python.exe"
    return path / "bin" / "python"


async def _remove(path: Path, task_id: str) -> None:
    try:
        await asyncio.to_thread(shutil.rmtree, path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Task [{task_id}] could not remove {path}: {e}")


async def _create(
    workdir: Path,
    interpreter: str,
    limits: ExecutionLimits,
    task_id: str,
) -> IsolatedEnvironment | None:
    path = workdir / VENV_DIR
    logger.info(f"Task [{task_id}] creating virtual environment in {path}")
    outcome = await capture([interpreter, "-m", "venv", str(path)], limits.venv_create_timeout)
    if outcome is None or outcome[0] != 0:
        detail = "timed out or could not start" if outcome is None else outcome[1].strip()
        logger.warning(f"Task [{task_id}] virtual environment creation failed ({detail}); using system interpreter")
        return None

    python = venv_python(path)
    if not python.is_file():
        logger.warning(f"Task [{task_id}] virtual environment has no interpreter at {python}; using system interpreter")
        return None
    return IsolatedEnvironment(path=path, python=python)


async def _install(
    venv: IsolatedEnvironment,
    workdir: Path,
    limits: ExecutionLimits,
    task_id: str,
    sink: OutputSink | None,
) -> bool:
    logger.info(f"Task [{task_id}] installing {REQUIREMENTS_FILE}")
    argv = [str(venv.python), "-m", "pip", "install", "--disable-pip-version-check", "-r", str(workdir / REQUIREMENTS_FILE)]
    outcome = await capture(argv, limits.venv_install_timeout)
    if outcome is not None and outcome[0] == 0:
        return True

    if outcome is None:
        reason = f"timed out after {limits.venv_install_timeout:g} seconds"
    else:
        reason = f"pip exited with code {outcome[0]}"
    logger.warning(f"Task [{task_id}] dependency install failed ({reason}); continuing with what is available")
    if sink is not None:
        sink(OutputChunk("stderr", f"[dxworker] Warning: dependency install failed ({reason}); continuing\n"))
    return False


@asynccontextmanager
async def isolated_environment(
    workdir: Path,
    interpreter: str,
    *,
    limits: ExecutionLimits | None = None,
    task_id: str = "",
    sink: OutputSink | None = None,
) -> AsyncIterator[IsolatedEnvironment | None]:
    """Yield a prepared environment, or None when the system interpreter should be used.

    The environment directory is removed on exit whatever happened inside.
    """
    limits = limits or ExecutionLimits()
    if not has_requirements(workdir):
        yield None
        return

    path = workdir / VENV_DIR
    try:
        venv = await _create(workdir, interpreter, limits, task_id)
        if venv is not None:
            await _install(venv, workdir, limits, task_id, sink)
        yield venv
    finally:
        await _remove(path, task_id)
