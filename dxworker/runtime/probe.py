"""
Runtime capability probe.

Runs one short version query per known guest runtime, all at once, and
records what answered. A runtime that fails its probe stays unavailable for
the life of the process; there is no re-probe.
"""

import asyncio
import contextlib
import re
from dataclasses import dataclass

from loguru import logger

from dxworker.runtime.types import DOCKER, NODE, PYTHON, SHELL, UNAVAILABLE, RuntimeInfo

_VERSION_RE = re.compile(r"\d+(?:\.\d+)+")


@dataclass(frozen=True)
class ProbeSpec:
    """Version query for one runtime; candidates are tried in order."""
    name: str
    candidates: tuple[tuple[str, ...], ...]


DEFAULT_PROBES: tuple[ProbeSpec, ...] = (
    ProbeSpec(PYTHON, (("python3", "--version"), ("python", "--version"))),
    ProbeSpec(NODE, (("node", "--version"),)),
    ProbeSpec(SHELL, (("bash", "--version"),)),
    ProbeSpec(DOCKER, (("docker", "--version"),)),
    ProbeSpec("java", (("java", "-version"),)),  # prints to stderr
    ProbeSpec("go", (("go", "version"),)),
)


async def capture(argv: tuple[str, ...] | list[str], timeout: float) -> tuple[int, str] | None:
    """Run a short command and return (exit code, stdout+stderr).

    Returns None when the binary is missing, cannot be started, or does not
    finish within ``timeout`` seconds.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        return None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        with contextlib.suppress(Exception):
            await process.wait()
        return None

    text = (stdout or b"").decode("utf-8", errors="replace") + (stderr or b"").decode(
        "utf-8", errors="replace"
    )
    return process.returncode, text


def parse_version(text: str) -> str | None:
    """Pull the first dotted version number out of a version banner."""
    match = _VERSION_RE.search(text or "")
    if match:
        return match.group(0)
    first = (text or "").strip().splitlines()
    return first[0].strip() if first else None


class RuntimeProbe:
    """Detects which guest runtimes are installed on this host."""

    def __init__(self, probes: tuple[ProbeSpec, ...] = DEFAULT_PROBES, timeout: float = 5.0):
        self.probes = probes
        self.timeout = timeout

    async def probe(self, probe_spec: ProbeSpec) -> RuntimeInfo:
        """Probe a single runtime; never raises."""
        for argv in probe_spec.candidates:
            try:
                outcome = await capture(argv, self.timeout)
            except Exception as e:
                logger.debug(f"Runtime probe {probe_spec.name} ({argv[0]}) errored: {e}")
                continue
            if outcome is None:
                continue
            code, text = outcome
            if code != 0:
                continue
            return RuntimeInfo(available=True, version=parse_version(text), command=argv[0])
        return UNAVAILABLE

    async def detect_all(self) -> dict[str, RuntimeInfo]:
        """Probe every known runtime concurrently."""
        results = await asyncio.gather(*(self.probe(probe_spec) for probe_spec in self.probes))
        runtimes = {probe_spec.name: info for probe_spec, info in zip(self.probes, results)}

        found = [f"{name} {info.version or ''}".strip() for name, info in runtimes.items() if info.available]
        missing = [name for name, info in runtimes.items() if not info.available]
        logger.info(f"Runtimes available: {', '.join(found) or 'none'}")
        if missing:
            logger.info(f"Runtimes missing: {', '.join(missing)}")
        return runtimes
