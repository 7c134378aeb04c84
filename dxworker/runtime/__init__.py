"""Guest runtime detection."""

from dxworker.runtime.probe import RuntimeProbe
from dxworker.runtime.types import RuntimeInfo, RuntimeKind, canonical_runtime

__all__ = ["RuntimeProbe", "RuntimeInfo", "RuntimeKind", "canonical_runtime"]
