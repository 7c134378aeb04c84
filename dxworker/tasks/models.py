"""
Task data model.

A task arrives from the control plane as a JSON object and is turned into an
immutable ``Task`` once; its execution config is parsed at the same time and
never re-read. Execution produces one ``ExecutionResult`` (or an error) which
is folded into a single ``TaskOutcome`` before it is reported.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from dxworker.tasks.errors import ExecutionError
from dxworker.utils.helpers import timestamp

StreamName = Literal["stdout", "stderr"]


def _string_map(value: Any, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ExecutionError(f"Invalid execution config: '{name}' must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _parse_timeout(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ExecutionError("Invalid execution config: 'timeout' must be a number of seconds")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ExecutionError("Invalid execution config: 'timeout' must be a number of seconds") from None
    return seconds if seconds > 0 else None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ExecutionConfig:
    """Recognised execution options for one task."""
    runtime: str | None = None
    command: str | None = None
    docker_image: str | None = None
    docker_command: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    volumes: dict[str, str] = field(default_factory=dict)
    ports: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Any) -> "ExecutionConfig":
        """Build a config from a mapping, a JSON string, or nothing."""
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ExecutionError(f"Invalid execution config JSON: {e}") from e
            if raw is None:
                return cls()
        if not isinstance(raw, dict):
            raise ExecutionError("Invalid execution config: expected a JSON object")

        return cls(
            runtime=_optional_str(raw.get("runtime")),
            command=_optional_str(raw.get("command")),
            docker_image=_optional_str(raw.get("dockerImage")),
            docker_command=_optional_str(raw.get("dockerCommand")),
            environment=_string_map(raw.get("environment"), "environment"),
            timeout=_parse_timeout(raw.get("timeout")),
            volumes=_string_map(raw.get("volumes"), "volumes"),
            ports=_string_map(raw.get("ports"), "ports"),
        )


@dataclass(frozen=True)
class Task:
    """A unit of work received from the control plane."""
    id: str
    config: ExecutionConfig = field(default_factory=ExecutionConfig)
    runtime: str | None = None
    docker_image: str | None = None
    code_base64: str | None = None
    code_url: str | None = None
    command: str | None = None
    use_docker: bool = False

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Task":
        """Build a task from the control plane's JSON representation."""
        task_id = _optional_str(data.get("id"))
        if not task_id:
            raise ExecutionError("Task payload has no id")
        config = ExecutionConfig.parse(data.get("executionConfig"))
        task_type = str(data.get("taskType") or "").strip().lower()
        return cls(
            id=task_id,
            config=config,
            runtime=_optional_str(data.get("runtime")),
            docker_image=_optional_str(data.get("dockerImage")),
            code_base64=_optional_str(data.get("codeBase64") or data.get("fileBase64")),
            code_url=_optional_str(data.get("codeUrl") or data.get("fileUrl")),
            command=_optional_str(data.get("command")) or config.command,
            use_docker=bool(data.get("useDocker")) or task_type in {"docker", "container"},
        )

    @property
    def has_bundle(self) -> bool:
        return bool(self.code_base64 or self.code_url)

    @property
    def is_bare_command(self) -> bool:
        """True when the task is only a command string with no code to fetch."""
        return bool(self.command) and not self.has_bundle

    @property
    def image(self) -> str | None:
        return self.config.docker_image or self.docker_image

    @property
    def wants_container(self) -> bool:
        return self.use_docker or bool(self.image)


@dataclass(frozen=True)
class OutputChunk:
    """One piece of guest output, tagged with its stream."""
    stream: StreamName
    data: str
    timestamp: str = field(default_factory=timestamp)

    def to_payload(self) -> dict[str, str]:
        return {"type": self.stream, "data": self.data, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ExecutionResult:
    """What a supervisor hands back after the guest process ends."""
    output: str
    execution_time: int
    success: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "executionTime": self.execution_time,
            "success": self.success,
        }


@dataclass
class TaskOutcome:
    """The single result of a task cycle, reported exactly once."""
    task_id: str
    result: ExecutionResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.success and self.error is None

    @property
    def error_message(self) -> str:
        if self.error:
            return self.error
        if self.result is not None and not self.result.success:
            return self.result.output or "Task failed"
        return "Task failed"
