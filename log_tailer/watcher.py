"""DiscoveryWatcher: watches a path or glob pattern and tails every matching file."""

import asyncio
import logging
import os
import re
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from log_tailer.classifiers import get_classifier
from log_tailer.metrics import DeliveryMetrics
from log_tailer.models import PathSpec
from log_tailer.multiplexer import StreamMultiplexer
from log_tailer.tailer import DEFAULT_POLL_INTERVAL, StdinReader, TailError, TailReader

logger = logging.getLogger(__name__)

_MAGIC = re.compile(r"[*?[]")


class WatchError(RuntimeError):
    """A path argument cannot be watched."""


def has_magic(path: str) -> bool:
    return _MAGIC.search(path) is not None


def split_pattern(path: str) -> tuple[str, bool]:
    """Return (directory to observe, recursive?) for a literal path or glob.

    The observed directory is the deepest ancestor without glob characters.
    """
    if not has_magic(path):
        return os.path.dirname(path), False

    parts = path.split(os.sep)
    for i, part in enumerate(parts):
        if has_magic(part):
            base = os.sep.join(parts[:i]) or os.sep
            recursive = i < len(parts) - 1 or "**" in part
            return base, recursive
    return os.path.dirname(path), False


def glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a glob into a regex where only `**` crosses directories."""
    sep = re.escape(os.sep)
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**" + os.sep, i):
            out.append(f"(?:.*{sep})?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append(f"[^{sep}]*")
            i += 1
        elif c == "?":
            out.append(f"[^{sep}]")
            i += 1
        elif c == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


class _EventBridge(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback):
        super().__init__()
        self._loop = loop
        self._callback = callback

    def _forward(self, kind: str, path: str):
        try:
            self._loop.call_soon_threadsafe(self._callback, kind, os.path.abspath(path))
        except RuntimeError:
            # loop already closed during shutdown
            pass

    def on_created(self, event):
        if not event.is_directory:
            self._forward("created", event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._forward("modified", event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._forward("created", event.dest_path)


class DiscoveryWatcher:
    """Discovers files for one PathSpec and starts a TailReader for each.

    `wait_ready()` returns once the initial scan is done, whether or not the
    readers it started have reached end-of-file yet.
    """

    def __init__(
        self,
        spec: PathSpec,
        mux: StreamMultiplexer,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        metrics: Optional[DeliveryMetrics] = None,
        stdin=None,
    ):
        self.spec = spec
        self._mux = mux
        self._poll_interval = poll_interval
        self._metrics = metrics
        self._stdin = stdin
        self._classifier = get_classifier(spec.format)
        self._matcher = glob_to_regex(spec.path) if has_magic(spec.path) else None
        self._ready = asyncio.Event()
        self._readers: dict[str, TailReader] = {}
        self._tasks: set[asyncio.Task] = set()
        self._literal_failed = asyncio.Event()
        self.failed_files: dict[str, BaseException] = {}

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def readers(self) -> dict[str, TailReader]:
        return dict(self._readers)

    async def wait_ready(self):
        await self._ready.wait()

    def matches(self, path: str) -> bool:
        if self._matcher is None:
            return path == self.spec.path
        return self._matcher.match(path) is not None

    async def run(self):
        """Watch until cancelled. Raises WatchError if the path cannot be watched."""
        try:
            if self.spec.is_stdin:
                await self._run_stdin()
            else:
                await self._run_files()
        finally:
            # never leave the pipeline waiting on a watcher that died early
            self._ready.set()
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_stdin(self):
        reader = StdinReader(self._mux.attach("<stdin>"), self._stdin, self._metrics)
        self._ready.set()
        try:
            await reader.run()
        except TailError as e:
            raise WatchError(str(e)) from e

    async def _run_files(self):
        base_dir, recursive = split_pattern(self.spec.path)
        loop = asyncio.get_running_loop()
        observer = Observer()
        try:
            os.makedirs(base_dir, exist_ok=True)
            observer.schedule(_EventBridge(loop, self._on_event), base_dir, recursive=recursive)
            observer.start()
        except OSError as e:
            raise WatchError(f"Cannot watch {self.spec.path}: {e}") from e
        logger.info("Watching %s (dir=%s, recursive=%s)", self.spec.path, base_dir, recursive)

        try:
            for path in self._initial_scan():
                self._start_reader(path)
            self._ready.set()
            logger.info("Initial scan of %s found %d file(s)", self.spec.path, len(self._readers))

            while observer.is_alive():
                if self._literal_failed.is_set():
                    exc = self.failed_files[self.spec.path]
                    raise WatchError(f"Stopped tailing {self.spec.path}: {exc}") from exc
                try:
                    await asyncio.wait_for(self._literal_failed.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
            raise WatchError(f"Observer for {self.spec.path} stopped unexpectedly")
        finally:
            observer.stop()
            await loop.run_in_executor(None, observer.join, 5)

    def _initial_scan(self) -> list[str]:
        if self._matcher is None:
            return [self.spec.path]
        # walk and filter with the same matcher used for later events
        base_dir, recursive = split_pattern(self.spec.path)
        found = []
        for root, dirs, files in os.walk(base_dir):
            for name in files:
                path = os.path.join(root, name)
                if self.matches(path) and os.path.isfile(path):
                    found.append(path)
            if not recursive:
                break
        return sorted(found)

    def _on_event(self, kind: str, path: str):
        reader = self._readers.get(path)
        if reader is not None:
            reader.notify()
            return
        if not self._ready.is_set() or path in self.failed_files:
            return
        if kind == "created" and self.matches(path) and os.path.isfile(path):
            logger.info("Discovered %s", path)
            self._start_reader(path)

    def _start_reader(self, path: str):
        if path in self._readers:
            return
        reader = TailReader(
            path,
            self._classifier,
            self._mux.attach(path),
            poll_interval=self._poll_interval,
            metrics=self._metrics,
        )
        self._readers[path] = reader
        task = asyncio.create_task(reader.run(), name=f"tail:{path}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, p=path: self._on_reader_done(p, t))

    def _on_reader_done(self, path: str, task: asyncio.Task):
        self._tasks.discard(task)
        self._readers.pop(path, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed_files[path] = exc
            logger.error("Stopped tailing %s: %s", path, exc)
            if self._matcher is None:
                self._literal_failed.set()
