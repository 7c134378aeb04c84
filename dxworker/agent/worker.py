"""
Worker agent control loop.

Lifecycle: INITIALIZING -> REGISTERING -> IDLE <-> EXECUTING -> SHUTTING_DOWN -> TERMINATED.

Two tickers run side by side once registered:
  - heartbeat: always fires, reports "busy" while a task is in flight
  - poll: skipped entirely while a task is in flight

Both loop on one stop event, so shutdown is a single ``set()``. A task runs
as its own asyncio task so the tickers keep going while it executes, and
every task ends in exactly one complete or fail report.
"""

import asyncio
import os
import signal
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from dxworker.agent.identity import WorkerCapabilities, collect_capabilities, current_ram_available_mb
from dxworker.config.schema import Config
from dxworker.control.client import ControlPlaneClient
from dxworker.executor.executor import TaskExecutor
from dxworker.runtime.probe import RuntimeProbe
from dxworker.runtime.types import RuntimeInfo
from dxworker.tasks.errors import TaskError
from dxworker.tasks.models import TaskOutcome, Task
from dxworker.utils.helpers import ensure_dir


class AgentState(str, Enum):
    INITIALIZING = "initializing"
    REGISTERING = "registering"
    IDLE = "idle"
    EXECUTING = "executing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class WorkerAgent:
    """Registers with the control plane, then polls for and runs tasks one at a time."""

    def __init__(
        self,
        config: Config,
        client: ControlPlaneClient | None = None,
        runtimes: dict[str, RuntimeInfo] | None = None,
        executor: TaskExecutor | None = None,
        capabilities: WorkerCapabilities | None = None,
        force_exit: Callable[[int], Any] = os._exit,
    ):
        self.config = config
        self.client = client or ControlPlaneClient(
            config.api_url,
            config.api_key,
            timeout=config.request_timeout,
            output_limit=config.output_limit,
        )
        self.runtimes = runtimes
        self.executor = executor
        self.capabilities = capabilities
        self.worker_id: str | None = None
        self.state = AgentState.INITIALIZING

        self._force_exit = force_exit
        self._stop = asyncio.Event()
        self._busy = False
        self._current: asyncio.Task | None = None
        self._tickers: list[asyncio.Task] = []
        self._poller: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def mac_address(self) -> str:
        return self.capabilities.mac_address if self.capabilities else ""

    # ── lifecycle ──

    async def initialize(self) -> None:
        self.state = AgentState.INITIALIZING
        if self.runtimes is None:
            self.runtimes = await RuntimeProbe(timeout=self.config.execution.probe_timeout).detect_all()
        ensure_dir(self.config.work_path)
        if self.capabilities is None:
            self.capabilities = await collect_capabilities(self.config, self.runtimes)
        if self.executor is None:
            self.executor = TaskExecutor(self.config, self.runtimes, send_output=self.client.stream_output)

    async def register(self) -> str:
        """Register with the control plane. RegistrationError is fatal to the agent."""
        self.state = AgentState.REGISTERING
        logger.info(f"Registering {self.capabilities.name} with {self.config.api_url}")
        self.worker_id = await self.client.register(self.capabilities.to_payload())
        logger.info(f"Registered as worker {self.worker_id}")
        return self.worker_id

    async def run(self) -> None:
        """Initialize, register, then run until a shutdown is requested."""
        try:
            await self.initialize()
            await self.register()
            self._install_signal_handlers()
            self.state = AgentState.IDLE
            self.start_tickers()
            logger.info(
                f"Worker running: heartbeat every {self.config.heartbeat_interval:g}s, "
                f"poll every {self.config.poll_interval:g}s"
            )
            await self._stop.wait()
            await self.shutdown()
        finally:
            self._remove_signal_handlers()
            await self.client.aclose()
            self.state = AgentState.TERMINATED

    def request_shutdown(self) -> None:
        """First call starts a graceful shutdown; a second one exits immediately."""
        if self._stop.is_set():
            logger.warning("Second shutdown signal received, exiting now")
            self._force_exit(1)
            return
        logger.info("Shutdown requested")
        self.state = AgentState.SHUTTING_DOWN
        self._stop.set()

    async def shutdown(self) -> None:
        self.state = AgentState.SHUTTING_DOWN
        self._stop.set()
        # Let an in-flight poll finish so a task it receives is still reported.
        for ticker in self._tickers:
            if ticker is not self._poller:
                ticker.cancel()
        await asyncio.gather(*self._tickers, return_exceptions=True)
        self._tickers.clear()

        try:
            await self.client.heartbeat(self.mac_address, current_ram_available_mb(), "offline")
        except Exception as e:
            logger.debug(f"Offline heartbeat failed: {e}")

        await asyncio.sleep(self.config.shutdown_grace_period)
        if self._current is not None and not self._current.done():
            logger.warning("Task still running after grace period; stopping it")
            self._current.cancel()
            await asyncio.gather(self._current, return_exceptions=True)
        logger.info("Worker stopped")

    # ── tickers ──

    def start_tickers(self) -> None:
        self._poller = asyncio.create_task(self._tick("poll", self.config.poll_interval, self.poll_once))
        self._tickers = [
            asyncio.create_task(self._tick("heartbeat", self.config.heartbeat_interval, self.heartbeat)),
            self._poller,
        ]

    async def _tick(self, name: str, interval: float, action: Callable[[], Awaitable[None]]) -> None:
        while not self._stop.is_set():
            try:
                await action()
            except Exception as e:
                logger.debug(f"{name} failed: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def heartbeat(self) -> None:
        status = "busy" if self._busy else "online"
        ram = await asyncio.to_thread(current_ram_available_mb)
        await self.client.heartbeat(self.mac_address, ram, status)

    async def poll_once(self) -> None:
        """Fetch one task unless one is already running."""
        if self._busy or self._stop.is_set():
            return
        payload = await self.client.next_task(self.worker_id)
        if not payload:
            return
        if self._stop.is_set():
            task_id = str(payload.get("id") or "")
            logger.warning(f"Task [{task_id}] arrived during shutdown; reporting it as failed")
            await self._report(TaskOutcome(task_id, error="Worker shut down before the task started"))
            return
        # Claim the gate before yielding so the next tick cannot fetch a second task.
        self._busy = True
        self.state = AgentState.EXECUTING
        self._current = asyncio.create_task(self._run_task(payload))

    # ── task cycle ──

    async def _run_task(self, payload: dict[str, Any]) -> None:
        try:
            outcome = await self.execute(payload)
            await self._report(outcome)
        except Exception as e:
            logger.error(f"Task [{payload.get('id')}] cycle failed: {e}")
        finally:
            self._busy = False
            self._current = None
            if not self._stop.is_set():
                self.state = AgentState.IDLE

    async def execute(self, payload: dict[str, Any]) -> TaskOutcome:
        """Run one task payload and fold every possible ending into a TaskOutcome."""
        task_id = str(payload.get("id") or "")
        logger.info(f"Task [{task_id}] received")
        try:
            task = Task.from_payload(payload)
            result = await self.executor.execute(task)
            logger.info(f"Task [{task_id}] completed in {result.execution_time}s")
            return TaskOutcome(task_id, result=result)
        except asyncio.CancelledError:
            # Not re-raised: the task must still be reported as failed.
            logger.warning(f"Task [{task_id}] cancelled")
            return TaskOutcome(task_id, error="Worker shut down before the task finished")
        except TaskError as e:
            logger.error(f"Task [{task_id}] failed: {e}")
            return TaskOutcome(task_id, error=str(e))
        except Exception as e:
            logger.exception(f"Task [{task_id}] failed unexpectedly")
            return TaskOutcome(task_id, error=f"Unexpected error: {type(e).__name__}: {e}")

    async def _report(self, outcome: TaskOutcome) -> None:
        if not outcome.task_id:
            logger.error(f"Cannot report a task without an id: {outcome.error_message}")
            return
        if outcome.succeeded:
            await self.client.complete_task(
                outcome.task_id,
                self.worker_id,
                outcome.result.execution_time,
                outcome.result.output,
            )
        else:
            await self.client.fail_task(outcome.task_id, self.worker_id, outcome.error_message)

    # ── signals ──

    _SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_shutdown))

    def _remove_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in self._SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
