"""
HTTP client for the DistributeX control plane.

Thin typed wrappers over the worker endpoints. Every request carries the
bearer token, a JSON content type and the worker user agent; anything other
than a 2xx response becomes a ``ControlPlaneError``.
"""

from typing import Any

import httpx
from loguru import logger

from dxworker import __version__
from dxworker.control.errors import ControlPlaneError, RegistrationError
from dxworker.tasks.models import OutputChunk
from dxworker.utils.helpers import truncate_string

USER_AGENT = f"DistributeX-Worker/{__version__}"


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error"):
            if body.get(key):
                return str(body[key])
    return resp.reason_phrase or "Request failed"


class ControlPlaneClient:
    """Async client for registration, heartbeats, polling and task reports."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        output_limit: int = 5000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.output_limit = output_limit
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ControlPlaneClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise ControlPlaneError(None, f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise ControlPlaneError(None, f"{method} {path} failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise ControlPlaneError(resp.status_code, _error_message(resp))
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    async def register(self, capabilities: dict[str, Any]) -> str:
        """Register this host and return the worker id the control plane assigned."""
        try:
            data = await self._request("POST", "/api/workers/register", json=capabilities)
        except ControlPlaneError as e:
            raise RegistrationError(e.status_code, e.message) from e
        worker_id = data.get("workerId") if isinstance(data, dict) else None
        if not worker_id:
            raise RegistrationError(None, "Registration response did not include a workerId")
        return str(worker_id)

    async def heartbeat(self, mac_address: str, ram_available: int, status: str) -> None:
        await self._request(
            "POST",
            "/api/workers/heartbeat",
            json={"macAddress": mac_address, "ramAvailable": ram_available, "status": status},
        )

    async def next_task(self, worker_id: str) -> dict[str, Any] | None:
        """Fetch the next task for this worker, or None when there is no work."""
        data = await self._request("GET", f"/api/workers/{worker_id}/tasks/next")
        if not isinstance(data, dict):
            return None
        task = data.get("task")
        return task if isinstance(task, dict) and task else None

    async def stream_output(self, task_id: str, chunks: list[OutputChunk]) -> None:
        if not chunks:
            return
        await self._request(
            "POST",
            f"/api/tasks/{task_id}/output",
            json={"output": [c.to_payload() for c in chunks]},
        )

    async def complete_task(self, task_id: str, worker_id: str, execution_time: int, output: str) -> None:
        if len(output) > self.output_limit:
            logger.debug(f"Task [{task_id}] output truncated from {len(output)} to {self.output_limit} chars")
        await self._request(
            "PUT",
            f"/api/tasks/{task_id}/complete",
            json={
                "workerId": worker_id,
                "executionTime": execution_time,
                "output": truncate_string(output, self.output_limit, suffix=""),
            },
        )

    async def fail_task(self, task_id: str, worker_id: str, error_message: str) -> None:
        await self._request(
            "PUT",
            f"/api/tasks/{task_id}/fail",
            json={"workerId": worker_id, "errorMessage": error_message},
        )
