"""StreamMultiplexer: fan-in of per-source line streams into two global streams."""

import asyncio
import logging
from typing import AsyncIterator, Optional

from log_tailer.models import Channel, ClassifiedLine

logger = logging.getLogger(__name__)


class SourceHandle:
    """Write side of one attached source.

    Closing a handle only detaches that source; the global streams stay open.
    """

    def __init__(self, mux: "StreamMultiplexer", name: str):
        self._mux = mux
        self.name = name
        self.closed = False

    def emit(self, line: ClassifiedLine):
        if self.closed:
            raise RuntimeError(f"Source {self.name} is closed")
        self._mux._put(line)

    def close(self):
        if not self.closed:
            self.closed = True
            self._mux._detach(self)


class StreamMultiplexer:
    """Merges any number of sources into global-stdout and global-stderr.

    Both global streams share one unbounded asyncio.Queue of ClassifiedLine,
    so emitting never blocks a reader and a consumer sees lines in exactly
    the order they were emitted, across sources and across channels. The
    channel tag on each line says which global stream it belongs to.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._counts = {channel: 0 for channel in Channel}
        self._sources: dict[str, SourceHandle] = {}

    @property
    def sources(self) -> list[str]:
        return list(self._sources)

    def attach(self, name: str) -> SourceHandle:
        """Attach a new source. Already attached sources are unaffected."""
        if name in self._sources:
            raise ValueError(f"Source already attached: {name}")
        handle = SourceHandle(self, name)
        self._sources[name] = handle
        logger.debug("Attached source %s (%d total)", name, len(self._sources))
        return handle

    def _detach(self, handle: SourceHandle):
        self._sources.pop(handle.name, None)
        logger.debug("Detached source %s (%d remaining)", handle.name, len(self._sources))

    def _put(self, line: ClassifiedLine):
        self._counts[line.channel] += 1
        self._queue.put_nowait(line)

    def get_nowait(self) -> ClassifiedLine:
        line = self._queue.get_nowait()
        self._counts[line.channel] -= 1
        return line

    def pending(self, channel: Optional[Channel] = None) -> int:
        """Lines emitted but not yet consumed, for one channel or both."""
        if channel is None:
            return self._queue.qsize()
        return self._counts[channel]

    async def lines(self) -> AsyncIterator[ClassifiedLine]:
        """Yield both global streams merged in emission order. Never ends on its own."""
        while True:
            line = await self._queue.get()
            self._counts[line.channel] -= 1
            yield line
