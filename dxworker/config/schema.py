"""Configuration schema using Pydantic."""

import tempfile
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "distributex-tasks")


class ExecutionLimits(BaseModel):
    """Timeouts and buffer sizes used while executing tasks."""
    probe_timeout: float = 5.0  # Per-runtime version query
    download_timeout: float = 60.0  # Remote bundle download
    kill_grace_period: float = 5.0  # SIGTERM -> SIGKILL delay
    shell_timeout: float = 300.0
    max_output_bytes: int = 10 * 1024 * 1024  # Shell/container captured output cap
    venv_create_timeout: float = 30.0
    venv_install_timeout: float = 180.0
    stdout_flush_threshold: int = 5  # Buffered chunks before a stdout-triggered flush
    stderr_flush_threshold: int = 3


class HostEnvironment(BaseSettings):
    """Host facts passed in by the installer when the agent runs inside a container.

    Anything set here wins over local detection, since a containerised agent
    would otherwise report the container's hardware instead of the host's.
    """
    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    host_mac_address: str | None = None  # Stable identity override
    docker_container: bool = False
    hostname: str | None = None
    cpu_cores: int | None = None
    cpu_model: str | None = None
    ram_total_mb: int | None = None
    gpu_available: bool | None = None
    gpu_model: str | None = None
    gpu_memory_mb: int | None = None
    gpu_count: int | None = None
    storage_available_mb: int | None = None
    platform: str | None = None
    arch: str | None = None


class Config(BaseSettings):
    """Root configuration for the worker agent."""
    model_config = SettingsConfigDict(
        env_prefix="DISTRIBUTEX_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    api_url: str = "https://distributex.cloud"
    api_key: str = ""
    heartbeat_interval: float = 60.0
    poll_interval: float = 10.0
    work_dir: str = Field(default_factory=_default_work_dir)
    debug: bool = False
    # Reserved: retry policy currently belongs to the control plane.
    max_retries: int = 3
    retry_delay: float = 5.0
    request_timeout: float = 30.0
    shutdown_grace_period: float = 3.0
    output_limit: int = 5000  # Max chars of output sent with a completion report
    execution: ExecutionLimits = Field(default_factory=ExecutionLimits)
    host: HostEnvironment = Field(default_factory=HostEnvironment)

    @property
    def work_path(self) -> Path:
        """Get expanded working-directory root."""
        return Path(self.work_dir).expanduser()

    @property
    def is_docker(self) -> bool:
        return bool(self.host.docker_container)
