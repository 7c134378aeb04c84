"""
Host identity and capability snapshot.

The worker's identity comes from a normalised MAC address so the same host
always registers as the same logical worker. When the agent runs inside a
container the installer passes the host's real facts through environment
variables (``HOST_MAC_ADDRESS``, ``CPU_CORES`` ...); those always win over
what can be detected from inside the container.
"""

import asyncio
import os
import platform
import socket
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import psutil
from loguru import logger

from dxworker import __version__
from dxworker.config.loader import convert_to_camel
from dxworker.config.schema import Config, HostEnvironment
from dxworker.runtime.probe import capture
from dxworker.runtime.types import RuntimeInfo

_MB = 1024 * 1024
_NULL_MACS = {"", "000000000000", "ffffffffffff"}


def normalize_mac(mac: str) -> str:
    """Lowercase a MAC address and strip separators: ``AA:BB-..`` -> ``aabb..``."""
    text = (mac or "").strip().lower()
    for sep in (":", "-", ".", " "):
        text = text.replace(sep, "")
    return "".join(text.split())


def stable_worker_id(mac: str) -> str:
    return f"worker-{normalize_mac(mac)}"


def _interface_macs() -> list[str]:
    macs = []
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        logger.debug(f"Could not list network interfaces: {e}")
        return macs
    for name in sorted(interfaces):
        if name == "lo" or name.lower().startswith("loopback"):
            continue
        for addr in interfaces[name]:
            if addr.family != psutil.AF_LINK:
                continue
            mac = normalize_mac(addr.address)
            if len(mac) == 12 and mac not in _NULL_MACS:
                macs.append(mac)
    return macs


def detect_mac_address(host: HostEnvironment | None = None) -> str:
    """Return the host MAC, normalised. The installer's override wins."""
    if host is not None and host.host_mac_address:
        return normalize_mac(host.host_mac_address)
    macs = _interface_macs()
    if macs:
        return macs[0]
    return f"{uuid.getnode():012x}"


@dataclass
class GpuInfo:
    available: bool = False
    model: str | None = None
    memory_mb: int | None = None
    count: int = 0


def parse_nvidia_smi(text: str) -> GpuInfo:
    """Parse ``nvidia-smi --query-gpu=name,memory.total --format=csv,noheader,nounits``."""
    rows = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not rows:
        return GpuInfo()
    parts = [p.strip() for p in rows[0].split(",")]
    memory = None
    if len(parts) > 1:
        try:
            memory = int(float(parts[1]))
        except ValueError:
            memory = None
    return GpuInfo(available=True, model=parts[0] or None, memory_mb=memory, count=len(rows))


async def detect_gpu(timeout: float = 5.0) -> GpuInfo:
    outcome = await capture(
        ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"],
        timeout,
    )
    if outcome is None or outcome[0] != 0:
        return GpuInfo()
    return parse_nvidia_smi(outcome[1])


def _cpu_model() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.is_file():
        try:
            for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
        except OSError:
            pass
    return platform.processor() or platform.machine() or "unknown"


def _existing_parent(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path.cwd()


def current_ram_available_mb() -> int:
    return int(psutil.virtual_memory().available // _MB)


def _host_snapshot(work_path: Path) -> dict[str, Any]:
    """Blocking resource snapshot; run in a thread."""
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(str(_existing_parent(work_path)))
    return {
        "cpu_cores": psutil.cpu_count(logical=True) or os.cpu_count() or 1,
        "cpu_model": _cpu_model(),
        "ram_total": int(memory.total // _MB),
        "ram_available": int(memory.available // _MB),
        "storage_total": int(disk.total // _MB),
        "storage_available": int(disk.free // _MB),
    }


@dataclass
class WorkerCapabilities:
    """Registration payload: who this host is and what it can run."""
    mac_address: str
    name: str
    hostname: str
    platform: str
    architecture: str
    cpu_cores: int
    cpu_model: str
    ram_total: int
    ram_available: int
    gpu_available: bool
    gpu_model: str | None
    gpu_memory: int | None
    gpu_count: int
    storage_total: int
    storage_available: int
    is_docker: bool
    runtimes: dict[str, RuntimeInfo] = field(default_factory=dict)
    version: str = __version__

    def to_payload(self) -> dict[str, Any]:
        return convert_to_camel(asdict(self))


async def collect_capabilities(config: Config, runtimes: dict[str, RuntimeInfo]) -> WorkerCapabilities:
    """Detect host facts, then apply the installer's overrides."""
    host = config.host
    mac = detect_mac_address(host)
    snapshot = await asyncio.to_thread(_host_snapshot, config.work_path)

    if host.gpu_available:
        gpu = GpuInfo(
            available=True,
            model=host.gpu_model,
            memory_mb=host.gpu_memory_mb,
            count=host.gpu_count if host.gpu_count is not None else 1,
        )
    elif host.gpu_available is not None:
        # The installer sends GPU_MODEL=None and GPU_MEMORY_MB=0 for GPU-less hosts.
        gpu = GpuInfo()
    else:
        gpu = await detect_gpu(config.execution.probe_timeout)

    capabilities = WorkerCapabilities(
        mac_address=mac,
        name=stable_worker_id(mac),
        hostname=host.hostname or socket.gethostname(),
        platform=host.platform or platform.system().lower(),
        architecture=host.arch or platform.machine().lower(),
        cpu_cores=host.cpu_cores or snapshot["cpu_cores"],
        cpu_model=host.cpu_model or snapshot["cpu_model"],
        ram_total=host.ram_total_mb or snapshot["ram_total"],
        ram_available=snapshot["ram_available"],
        gpu_available=gpu.available,
        gpu_model=gpu.model,
        gpu_memory=gpu.memory_mb,
        gpu_count=gpu.count,
        storage_total=snapshot["storage_total"],
        storage_available=host.storage_available_mb or snapshot["storage_available"],
        is_docker=config.is_docker,
        runtimes=dict(runtimes),
    )
    logger.info(
        f"Host {capabilities.hostname} ({capabilities.platform}/{capabilities.architecture}): "
        f"{capabilities.cpu_cores} cores, {capabilities.ram_total} MB RAM, "
        f"GPU {'yes' if gpu.available else 'no'}, docker={capabilities.is_docker}"
    )
    return capabilities
