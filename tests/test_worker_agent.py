from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from dxworker.agent.identity import WorkerCapabilities
from dxworker.agent.worker import AgentState, WorkerAgent
from dxworker.config.schema import Config
from dxworker.control.errors import ControlPlaneError, RegistrationError
from dxworker.tasks.errors import ExecutionError
from dxworker.tasks.models import ExecutionResult, Task


class _ClientStub:
    def __init__(self, tasks: list[dict[str, Any]] | None = None) -> None:
        self.tasks = list(tasks or [])
        self.completed: list[tuple] = []
        self.failed: list[tuple] = []
        self.heartbeats: list[str] = []
        self.polls = 0
        self.closed = False
        self.register_error: Exception | None = None
        self.complete_error: Exception | None = None

    async def register(self, capabilities: dict[str, Any]) -> str:
        if self.register_error:
            raise self.register_error
        return "w-1"

    async def heartbeat(self, mac_address: str, ram_available: int, status: str) -> None:
        self.heartbeats.append(status)

    async def next_task(self, worker_id: str) -> dict[str, Any] | None:
        self.polls += 1
        return self.tasks.pop(0) if self.tasks else None

    async def stream_output(self, task_id, chunks) -> None:
        return None

    async def complete_task(self, task_id: str, worker_id: str, execution_time: int, output: str) -> None:
        self.completed.append((task_id, worker_id, execution_time, output))
        if self.complete_error:
            raise self.complete_error

    async def fail_task(self, task_id: str, worker_id: str, error_message: str) -> None:
        self.failed.append((task_id, worker_id, error_message))

    async def aclose(self) -> None:
        self.closed = True


class _ExecutorStub:
    def __init__(self, result: ExecutionResult | None = None, error: Exception | None = None) -> None:
        self.result = result or ExecutionResult("done", 1)
        self.error = error
        self.release = asyncio.Event()
        self.release.set()
        self.seen: list[Task] = []

    async def execute(self, task: Task) -> ExecutionResult:
        self.seen.append(task)
        await self.release.wait()
        if self.error:
            raise self.error
        return self.result


def _capabilities() -> WorkerCapabilities:
    return WorkerCapabilities(
        mac_address="aabbccddeeff",
        name="worker-aabbccddeeff",
        hostname="test",
        platform="linux",
        architecture="x86_64",
        cpu_cores=4,
        cpu_model="test",
        ram_total=1024,
        ram_available=512,
        gpu_available=False,
        gpu_model=None,
        gpu_memory=None,
        gpu_count=0,
        storage_total=1000,
        storage_available=500,
        is_docker=False,
    )


def _agent(tmp_path: Path, client: _ClientStub, executor: _ExecutorStub, **config: Any) -> WorkerAgent:
    settings = Config(work_dir=str(tmp_path / "tasks"), shutdown_grace_period=0, **config)
    agent = WorkerAgent(
        settings,
        client=client,
        runtimes={},
        executor=executor,
        capabilities=_capabilities(),
    )
    agent.worker_id = "w-1"
    return agent


async def _run_one(agent: WorkerAgent) -> None:
    await agent.poll_once()
    if agent._current is not None:
        await agent._current


@pytest.mark.asyncio
async def test_success_reports_complete_once(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-1", "command": "echo hi"}])
    agent = _agent(tmp_path, client, _ExecutorStub(ExecutionResult("hi", 2)))

    await _run_one(agent)

    assert client.completed == [("t-1", "w-1", 2, "hi")]
    assert client.failed == []
    assert not agent.busy
    assert agent.state == AgentState.IDLE


@pytest.mark.asyncio
async def test_task_error_reports_fail_once(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-2"}])
    agent = _agent(tmp_path, client, _ExecutorStub(error=ExecutionError("Process exited with code 1")))

    await _run_one(agent)

    assert client.failed == [("t-2", "w-1", "Process exited with code 1")]
    assert client.completed == []


@pytest.mark.asyncio
async def test_unexpected_error_still_reports_fail(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-3"}])
    agent = _agent(tmp_path, client, _ExecutorStub(error=KeyError("boom")))

    await _run_one(agent)

    assert len(client.failed) == 1
    assert "KeyError" in client.failed[0][2]


@pytest.mark.asyncio
async def test_invalid_payload_is_reported_as_failure(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-4", "executionConfig": "{not json"}])
    executor = _ExecutorStub()
    agent = _agent(tmp_path, client, executor)

    await _run_one(agent)

    assert executor.seen == []
    assert len(client.failed) == 1
    assert "Invalid execution config" in client.failed[0][2]


@pytest.mark.asyncio
async def test_report_failure_clears_gate_without_second_report(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-5"}])
    client.complete_error = ControlPlaneError(500, "down")
    agent = _agent(tmp_path, client, _ExecutorStub())

    await _run_one(agent)

    assert len(client.completed) == 1
    assert client.failed == []
    assert not agent.busy


@pytest.mark.asyncio
async def test_poll_is_gated_and_heartbeat_reports_busy(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-6"}, {"id": "t-7"}])
    executor = _ExecutorStub()
    executor.release.clear()
    agent = _agent(tmp_path, client, executor)

    await agent.poll_once()
    await asyncio.sleep(0)
    assert agent.busy and agent.state == AgentState.EXECUTING

    await agent.poll_once()
    await agent.heartbeat()
    assert client.polls == 1
    assert client.heartbeats == ["busy"]

    executor.release.set()
    await agent._current
    await agent.heartbeat()
    assert client.heartbeats == ["busy", "online"]
    assert [c[0] for c in client.completed] == ["t-6"]


@pytest.mark.asyncio
async def test_run_loop_executes_then_shuts_down(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-8"}])
    agent = _agent(tmp_path, client, _ExecutorStub(), poll_interval=0.01, heartbeat_interval=0.01)

    runner = asyncio.create_task(agent.run())
    for _ in range(200):
        if client.completed:
            break
        await asyncio.sleep(0.01)
    agent.request_shutdown()
    await asyncio.wait_for(runner, timeout=5)

    assert [c[0] for c in client.completed] == ["t-8"]
    assert client.heartbeats[-1] == "offline"
    assert client.closed
    assert agent.state == AgentState.TERMINATED


@pytest.mark.asyncio
async def test_registration_failure_stops_agent(tmp_path: Path) -> None:
    client = _ClientStub()
    client.register_error = RegistrationError(401, "Invalid API key")
    agent = _agent(tmp_path, client, _ExecutorStub())

    with pytest.raises(RegistrationError):
        await agent.run()

    assert client.polls == 0
    assert client.closed


def test_second_shutdown_request_forces_exit(tmp_path: Path) -> None:
    exits: list[int] = []
    settings = Config(work_dir=str(tmp_path / "tasks"))
    agent = WorkerAgent(settings, client=_ClientStub(), force_exit=exits.append)

    agent.request_shutdown()
    assert agent.state == AgentState.SHUTTING_DOWN
    assert exits == []

    agent.request_shutdown()
    assert exits == [1]


async def _wait_for(condition, timeout: float = 5.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_shutdown_cancels_running_task_and_reports_fail_once(tmp_path: Path) -> None:
    client = _ClientStub([{"id": "t-9"}])
    executor = _ExecutorStub()
    executor.release.clear()
    agent = _agent(tmp_path, client, executor, poll_interval=0.01, heartbeat_interval=0.01)

    runner = asyncio.create_task(agent.run())
    await _wait_for(lambda: executor.seen)
    agent.request_shutdown()
    await asyncio.wait_for(runner, timeout=5)

    assert client.failed == [("t-9", "w-1", "Worker shut down before the task finished")]
    assert client.completed == []
    assert not agent.busy


class _SlowPollClient(_ClientStub):
    def __init__(self, task: dict[str, Any]) -> None:
        super().__init__()
        self.task = task
        self.answer = asyncio.Event()

    async def next_task(self, worker_id: str) -> dict[str, Any] | None:
        self.polls += 1
        if self.polls > 1:
            return None
        await self.answer.wait()
        return self.task


@pytest.mark.asyncio
async def test_task_assigned_during_shutdown_is_reported_not_dropped(tmp_path: Path) -> None:
    client = _SlowPollClient({"id": "t-10", "command": "echo hi"})
    executor = _ExecutorStub()
    agent = _agent(tmp_path, client, executor, poll_interval=0.01, heartbeat_interval=0.01)

    runner = asyncio.create_task(agent.run())
    await _wait_for(lambda: client.polls == 1)
    agent.request_shutdown()
    await asyncio.sleep(0.05)
    client.answer.set()
    await asyncio.wait_for(runner, timeout=5)

    assert executor.seen == []
    assert client.failed == [("t-10", "w-1", "Worker shut down before the task started")]
    assert client.completed == []
