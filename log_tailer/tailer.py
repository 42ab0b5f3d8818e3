"""Tail readers: follow a file (or stdin) from its current end and classify new lines."""

import asyncio
import logging
import os
import stat
import sys
from typing import Optional

import aiofiles

from log_tailer.classifiers import Classifier, classify, classify_plain
from log_tailer.metrics import DeliveryMetrics
from log_tailer.multiplexer import SourceHandle

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.25
READ_CHUNK_SIZE = 64 * 1024


class TailError(RuntimeError):
    """A tailed source could not be opened or read."""


class LineReader:
    """Shared line handling: split chunks, decode, skip blanks, classify, emit.

    Lines are split out of raw chunks here, so a line of any length is
    buffered until its newline arrives.
    """

    def __init__(
        self,
        name: str,
        classifier: Classifier,
        source: SourceHandle,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        self.name = name
        self._classifier = classifier
        self._source = source
        self._metrics = metrics
        self._ready = asyncio.Event()
        self._partial = b""
        self.lines_read = 0

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self):
        await self._ready.wait()

    def _handle_line(self, raw: bytes):
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip():
            return

        self.lines_read += 1
        classified = classify(line, self._classifier, self.name)
        if classified is None:
            if self._metrics:
                self._metrics.record_dropped()
            return
        self._source.emit(classified)

    def _feed(self, data: bytes):
        data = self._partial + data
        lines = data.split(b"\n")
        self._partial = lines.pop()
        for raw in lines:
            self._handle_line(raw)

    def _flush_partial(self):
        """Emit an unterminated last line once the source has ended."""
        if self._partial:
            raw, self._partial = self._partial, b""
            self._handle_line(raw)


class TailReader(LineReader):
    """Follows one file from the end it had when the reader started.

    - Creates the file if it does not exist yet
    - Never replays content written before it became ready
    - Buffers a trailing partial line until its newline arrives
    - Offset only moves forward; a shrinking file is reported, not re-read
    """

    def __init__(
        self,
        path: str,
        classifier: Classifier,
        source: SourceHandle,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        super().__init__(path, classifier, source, metrics)
        self.path = path
        self._poll_interval = poll_interval
        self._wake = asyncio.Event()
        self._offset = 0
        self._shrunk = False

    @property
    def offset(self) -> int:
        return self._offset

    def notify(self):
        """Wake the reader early, e.g. on a filesystem modification event."""
        self._wake.set()

    async def _ensure_exists(self):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        async with aiofiles.open(self.path, "ab"):
            pass

    async def run(self):
        """Tail forever. Raises TailError if the file cannot be read."""
        try:
            await self._ensure_exists()
            async with aiofiles.open(self.path, "rb") as f:
                await f.seek(0, os.SEEK_END)
                self._offset = await f.tell()
                self._ready.set()
                logger.info("Tailing %s from offset %d", self.path, self._offset)

                while True:
                    data = await f.read(READ_CHUNK_SIZE)
                    if data:
                        self._offset += len(data)
                        self._feed(data)
                        continue
                    self._check_shrink()
                    await self._wait_for_data()
        except OSError as e:
            raise TailError(f"Cannot tail {self.path}: {e}") from e
        finally:
            self._source.close()

    def _check_shrink(self):
        try:
            size = os.path.getsize(self.path)
        except FileNotFoundError:
            return
        if size < self._offset and not self._shrunk:
            logger.warning(
                "%s shrank below offset %d (size %d); waiting for it to grow",
                self.path, self._offset, size,
            )
        self._shrunk = size < self._offset

    async def _wait_for_data(self):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()


class StdinReader(LineReader):
    """Reads lines from standard input with the plain classifier.

    A pipe or terminal is read through the event loop's pipe transport; a
    regular file redirected onto stdin is read with aiofiles. Either way the
    source ends at end-of-file.
    """

    def __init__(
        self,
        source: SourceHandle,
        stream=None,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        super().__init__("<stdin>", classify_plain, source, metrics)
        self._stream = stream if stream is not None else sys.stdin

    async def run(self):
        """Read until stdin reaches end-of-file. Raises TailError if it cannot be read."""
        try:
            fd = self._stream.fileno()
            if stat.S_ISREG(os.fstat(fd).st_mode):
                await self._read_file(fd)
            else:
                await self._read_pipe()
            self._flush_partial()
            logger.info("stdin reached end-of-file")
        except (OSError, ValueError) as e:
            raise TailError(f"Cannot read stdin: {e}") from e
        finally:
            self._source.close()

    async def _read_file(self, fd: int):
        async with aiofiles.open(fd, "rb", closefd=False) as f:
            self._ready.set()
            logger.info("Reading from stdin (regular file)")
            while True:
                data = await f.read(READ_CHUNK_SIZE)
                if not data:
                    return
                self._feed(data)

    async def _read_pipe(self):
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        transport, _ = await loop.connect_read_pipe(lambda: protocol, self._stream)
        self._ready.set()
        logger.info("Reading from stdin")
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    return
                self._feed(data)
        finally:
            transport.close()
