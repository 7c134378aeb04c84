"""Control-plane errors.

``ControlPlaneError`` is raised for any non-2xx response or transport
failure. Callers decide whether it matters: registration failures stop the
agent, heartbeat and poll failures are just logged.
"""


class ControlPlaneError(RuntimeError):
    """A request to the control plane failed."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        prefix = f"HTTP {status_code}: " if status_code is not None else ""
        super().__init__(f"{prefix}{message}")


class RegistrationError(ControlPlaneError):
    """The control plane rejected registration. The agent cannot continue."""
