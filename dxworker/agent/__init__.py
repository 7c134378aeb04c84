"""Worker agent: host identity and the control loop."""

from dxworker.agent.identity import WorkerCapabilities, collect_capabilities, normalize_mac, stable_worker_id
from dxworker.agent.worker import AgentState, WorkerAgent

__all__ = [
    "AgentState",
    "WorkerAgent",
    "WorkerCapabilities",
    "collect_capabilities",
    "normalize_mac",
    "stable_worker_id",
]
