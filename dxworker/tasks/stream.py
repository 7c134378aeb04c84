"""
Live output streaming.

Supervisors push ``OutputChunk``s into a queue; a consumer drains it, echoes
each chunk to the local console and buffers it. Buffered chunks are shipped
to the control plane in small batches:

  - a stdout chunk triggers a flush once the buffer holds 5 entries
  - a stderr chunk triggers a flush once it holds 3

Shipping is fire-and-forget. A failed send is logged at debug level and
dropped; it never affects the task's outcome.
"""

import asyncio
import sys
from typing import Awaitable, Callable

from loguru import logger

from dxworker.tasks.models import OutputChunk

SendBatch = Callable[[list[OutputChunk]], Awaitable[None]]


class OutputStreamer:
    """Batches one task's output and ships it to the control plane."""

    def __init__(
        self,
        task_id: str,
        send: SendBatch,
        stdout_threshold: int = 5,
        stderr_threshold: int = 3,
        echo: bool = True,
        drain_timeout: float = 5.0,
    ):
        self.task_id = task_id
        self._send = send
        self._thresholds = {"stdout": max(1, stdout_threshold), "stderr": max(1, stderr_threshold)}
        self._echo = echo
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        self._buffer: list[OutputChunk] = []
        self._pending: set[asyncio.Task] = set()
        self._consumer: asyncio.Task | None = None

    def emit(self, chunk: OutputChunk) -> None:
        """Producer side: hand a chunk to the consumer."""
        self._queue.put_nowait(chunk)

    async def __aenter__(self) -> "OutputStreamer":
        self._consumer = asyncio.create_task(self.consume())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._queue.put_nowait(None)
        if self._consumer is not None:
            await self._consumer

    async def consume(self) -> None:
        """Drain the queue until the end marker, then flush what is left."""
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            if self._echo:
                self._write_console(chunk)
            self._buffer.append(chunk)
            if len(self._buffer) >= self._thresholds[chunk.stream]:
                self._flush()

        self._flush()
        if self._pending:
            # Give in-flight sends a moment so output lands before the completion report.
            await asyncio.wait(set(self._pending), timeout=self._drain_timeout)

    @staticmethod
    def _write_console(chunk: OutputChunk) -> None:
        target = sys.stdout if chunk.stream == "stdout" else sys.stderr
        try:
            target.write(chunk.data)
            target.flush()
        except (OSError, ValueError):
            pass

    def _flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        task = asyncio.create_task(self._send_safe(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_safe(self, batch: list[OutputChunk]) -> None:
        try:
            await self._send(batch)
        except Exception as e:
            logger.debug(f"Task [{self.task_id}] output stream send failed: {e}")
