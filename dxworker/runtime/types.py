"""Guest runtime descriptors."""

from dataclasses import dataclass
from enum import Enum


class RuntimeKind(str, Enum):
    """How a task is executed once its runtime is resolved."""
    SCRIPT = "script"
    SHELL = "shell"
    CONTAINER = "container"


@dataclass(frozen=True)
class RuntimeInfo:
    """Probe result for one guest runtime."""
    available: bool
    version: str | None = None
    command: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {"available": self.available, "version": self.version, "command": self.command}


UNAVAILABLE = RuntimeInfo(available=False)

# Runtime names the rest of the agent uses, plus the aliases tasks may send.
PYTHON = "python"
NODE = "node"
SHELL = "bash"
DOCKER = "docker"

RUNTIME_ALIASES: dict[str, str] = {
    "python3": PYTHON,
    "py": PYTHON,
    "nodejs": NODE,
    "javascript": NODE,
    "js": NODE,
    "shell": SHELL,
    "sh": SHELL,
    "container": DOCKER,
}


def canonical_runtime(name: str) -> str:
    """Normalise a runtime name sent by the control plane."""
    key = (name or "").strip().lower()
    return RUNTIME_ALIASES.get(key, key)
