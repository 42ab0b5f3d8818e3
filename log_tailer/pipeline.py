"""Pipeline: watchers -> tail readers -> multiplexer -> delivery queue -> sink."""

import asyncio
import logging
from typing import Iterable, Optional

from log_tailer.delivery import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY, DeliveryQueue
from log_tailer.metrics import DeliveryMetrics
from log_tailer.models import Identity, LogRecord, PathSpec
from log_tailer.multiplexer import StreamMultiplexer
from log_tailer.sink import RemoteSink
from log_tailer.tailer import DEFAULT_POLL_INTERVAL
from log_tailer.watcher import DiscoveryWatcher

logger = logging.getLogger(__name__)


class Pipeline:
    """Runs every watcher concurrently on one event loop.

    The delivery worker starts once every watcher has finished its initial
    scan. A single forwarder submits lines in the order they were emitted,
    whichever channel they belong to. `run` returns when all sources have ended and the queue is drained,
    and raises on the first fatal error (retry exhaustion, or every watcher
    failing).
    """

    def __init__(
        self,
        specs: Iterable[PathSpec],
        sink: RemoteSink,
        identity: Identity,
        table: str = "logs",
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        metrics: Optional[DeliveryMetrics] = None,
        stdin=None,
    ):
        self._identity = identity
        self.metrics = metrics or DeliveryMetrics()
        self.mux = StreamMultiplexer()
        self.delivery = DeliveryQueue(
            sink, table,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            metrics=self.metrics,
        )
        self.watchers = [
            DiscoveryWatcher(spec, self.mux, poll_interval, self.metrics, stdin=stdin)
            for spec in dict.fromkeys(specs)
        ]
        if not self.watchers:
            raise ValueError("Pipeline needs at least one path")
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self):
        await self._ready.wait()

    async def _forward(self):
        async for line in self.mux.lines():
            self.delivery.submit(LogRecord.from_line(self._identity, line.content, line.channel))

    async def run(self):
        watcher_tasks = {
            asyncio.create_task(w.run(), name=f"watch:{w.spec.path}"): w
            for w in self.watchers
        }
        background: list[asyncio.Task] = []
        try:
            await asyncio.gather(*(w.wait_ready() for w in self.watchers))
            self._ready.set()
            logger.info("Pipeline ready: %d path(s) watched", len(self.watchers))

            delivery_task = asyncio.create_task(self.delivery.run(), name="delivery")
            background.append(delivery_task)
            background.append(asyncio.create_task(self._forward(), name="forward"))

            errors = await self._supervise(watcher_tasks, delivery_task)
            await self._drain(delivery_task)
            if errors:
                raise errors[0]
            logger.info("All sources ended; pipeline finished")
        finally:
            pending = [t for t in list(watcher_tasks) + background if not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _supervise(self, watcher_tasks: dict, delivery_task: asyncio.Task) -> list:
        """Wait for watchers to end, failing fast if delivery dies."""
        errors = []
        running = set(watcher_tasks)
        while running:
            done, running = await asyncio.wait(
                running | {delivery_task}, return_when=asyncio.FIRST_COMPLETED,
            )
            running.discard(delivery_task)
            if delivery_task in done:
                # DeliveryError; the worker never returns normally
                delivery_task.result()
            for task in done:
                if task is delivery_task or task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    path = watcher_tasks[task].spec.path
                    logger.error("Watch failed for %s: %s", path, exc)
                    errors.append(exc)
        return errors

    async def _drain(self, delivery_task: asyncio.Task):
        """Let already-read lines reach the sink before returning."""
        while self.mux.pending():
            await asyncio.sleep(0)
        join = asyncio.create_task(self.delivery.join())
        try:
            done, _ = await asyncio.wait(
                {join, delivery_task}, return_when=asyncio.FIRST_COMPLETED,
            )
            if delivery_task in done:
                delivery_task.result()
        finally:
            join.cancel()
