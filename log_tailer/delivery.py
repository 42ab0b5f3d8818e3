"""DeliveryQueue: single-worker FIFO that drives the sink with fixed-delay retry."""

import asyncio
import logging
import time
from typing import Optional

from log_tailer.metrics import DeliveryMetrics
from log_tailer.models import DeliveryTask, LogRecord, record_to_row
from log_tailer.sink import RemoteSink, SinkError, SinkResult

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ATTEMPTS = 10
DEFAULT_RETRY_DELAY = 1.0


class DeliveryError(RuntimeError):
    """A record could not be delivered within the retry budget."""

    def __init__(self, record: LogRecord, attempts: int, last_error: Optional[str]):
        super().__init__(
            f"Failed to deliver record after {attempts} attempts: {last_error}"
        )
        self.record = record
        self.attempts = attempts
        self.last_error = last_error


class DeliveryQueue:
    """Multi-producer, single-consumer queue with one outstanding sink call.

    `submit` never blocks. The worker takes tasks in admission order and
    retries each one up to `retry_attempts` times with `retry_delay` seconds
    between attempts. When a task runs out of attempts the worker stops and
    `run` raises DeliveryError.
    """

    def __init__(
        self,
        sink: RemoteSink,
        table: str,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._sink = sink
        self._table = table
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._metrics = metrics or DeliveryMetrics()
        self._queue: asyncio.Queue[DeliveryTask] = asyncio.Queue()

    @property
    def metrics(self) -> DeliveryMetrics:
        return self._metrics

    def qsize(self) -> int:
        return self._queue.qsize()

    def submit(self, record: LogRecord) -> DeliveryTask:
        """Enqueue a record in arrival order."""
        task = DeliveryTask(record=record, max_attempts=self._retry_attempts)
        self._queue.put_nowait(task)
        logger.debug("Queued record (depth=%d)", self._queue.qsize())
        return task

    async def join(self):
        """Wait until every submitted task has been delivered."""
        await self._queue.join()

    async def run(self):
        """Drain the queue forever, one task at a time."""
        while True:
            task = await self._queue.get()
            try:
                await self._deliver(task)
            finally:
                self._queue.task_done()

    async def _deliver(self, task: DeliveryTask):
        row = record_to_row(task.record)
        while True:
            task.attempts += 1
            t0 = time.monotonic()
            try:
                result = await self._sink.insert(self._table, row)
            except SinkError as e:
                result = SinkResult(error=str(e))
            if result.ok:
                self._metrics.record_delivered((time.monotonic() - t0) * 1000)
                return

            task.errors.append(result.error)
            if task.exhausted:
                self._metrics.record_failed()
                logger.error(
                    "Insert failed after %d attempts: %s", task.attempts, result.error,
                )
                raise DeliveryError(task.record, task.attempts, result.error)

            self._metrics.record_retry()
            logger.warning(
                "Insert failed (attempt %d/%d): %s; retrying in %.1fs",
                task.attempts, task.max_attempts, result.error, self._retry_delay,
            )
            await asyncio.sleep(self._retry_delay)
