"""Tests for runtime detection."""

import sys

import pytest

from dxworker.runtime.probe import ProbeSpec, RuntimeProbe, parse_version
from dxworker.runtime.types import canonical_runtime


@pytest.mark.asyncio
async def test_probe_detects_current_interpreter() -> None:
    probe = RuntimeProbe(probes=(ProbeSpec("python", ((sys.executable, "--version"),)),))

    runtimes = await probe.detect_all()

    info = runtimes["python"]
    assert info.available
    assert info.command == sys.executable
    assert info.version == ".".join(str(p) for p in sys.version_info[:3])


@pytest.mark.asyncio
async def test_missing_binary_falls_through_to_next_candidate() -> None:
    probe_spec = ProbeSpec("python", (("definitely-not-a-binary-dx", "--version"), (sys.executable, "--version")))

    info = await RuntimeProbe().probe(probe_spec)

    assert info.available
    assert info.command == sys.executable


@pytest.mark.asyncio
async def test_failures_do_not_abort_other_probes() -> None:
    probes = (
        ProbeSpec("missing", (("definitely-not-a-binary-dx", "--version"),)),
        ProbeSpec("nonzero", ((sys.executable, "-c", "import sys; sys.exit(3)"),)),
        ProbeSpec("slow", ((sys.executable, "-c", "import time; time.sleep(10)"),)),
        ProbeSpec("ok", ((sys.executable, "-c", "print('tool 1.2.3')"),)),
    )

    runtimes = await RuntimeProbe(probes=probes, timeout=1.0).detect_all()

    assert not runtimes["missing"].available
    assert not runtimes["nonzero"].available
    assert not runtimes["slow"].available
    assert runtimes["ok"].available and runtimes["ok"].version == "1.2.3"


def test_parse_version_variants() -> None:
    assert parse_version("Python 3.12.1") == "3.12.1"
    assert parse_version("v20.11.0\n") == "20.11.0"
    assert parse_version('openjdk version "17.0.2" 2022-01-18') == "17.0.2"
    assert parse_version("weird banner\nmore") == "weird banner"
    assert parse_version("") is None


def test_runtime_aliases() -> None:
    assert canonical_runtime("Python3") == "python"
    assert canonical_runtime("javascript") == "node"
    assert canonical_runtime("sh") == "bash"
    assert canonical_runtime("ruby") == "ruby"
