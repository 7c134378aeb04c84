"""Task-level errors.

Anything raised from here ends the current task and is reported to the
control plane through the ``fail`` endpoint. None of them stop the agent.
"""


class TaskError(RuntimeError):
    """Base class for failures that end a single task."""


class MaterializationError(TaskError):
    """The task bundle could not be turned into a working directory."""


class ExecutionError(TaskError):
    """The guest process could not be started or did not succeed."""


class TaskTimeoutError(ExecutionError):
    """The guest process outlived its configured timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Task timed out after {timeout:g} seconds")


class ScriptNotFoundError(ExecutionError):
    """No script with the runtime's extension exists in the working directory."""


class RuntimeUnavailableError(ExecutionError):
    """The requested runtime is known but was not detected on this host."""

    def __init__(self, runtime: str):
        self.runtime = runtime
        super().__init__(f"Runtime '{runtime}' is not available on this worker")


class UnsupportedRuntimeError(ExecutionError):
    """The requested runtime is not one this worker knows how to run."""

    def __init__(self, runtime: str):
        self.runtime = runtime
        super().__init__(f"Unsupported runtime: '{runtime}'")
