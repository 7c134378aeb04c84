"""Control-plane HTTP client."""

from dxworker.control.client import ControlPlaneClient
from dxworker.control.errors import ControlPlaneError, RegistrationError

__all__ = ["ControlPlaneClient", "ControlPlaneError", "RegistrationError"]
