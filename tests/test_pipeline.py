"""End-to-end tests: watch -> tail -> classify -> multiplex -> deliver."""

import asyncio
import json
import os

import pytest

from conftest import FakeSink, wait_for_rows
from log_tailer.delivery import DeliveryError
from log_tailer.models import PathSpec
from log_tailer.pipeline import Pipeline


def _append(path, text: str):
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(text)
        fh.flush()


async def _start(pipeline: Pipeline) -> asyncio.Task:
    task = asyncio.create_task(pipeline.run())
    await asyncio.wait_for(pipeline.wait_ready(), timeout=5.0)
    for watcher in pipeline.watchers:
        for reader in watcher.readers.values():
            await asyncio.wait_for(reader.wait_ready(), timeout=5.0)
    return task


async def _stop(task: asyncio.Task):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@pytest.mark.asyncio
async def test_json_file_delivers_one_record(tmp_path, identity):
    target = tmp_path / "new.log"
    sink = FakeSink()
    pipeline = Pipeline(
        [PathSpec.parse(f"json:{target}")], sink, identity,
        table="agent_logs", poll_interval=0.02, retry_delay=0.01,
    )

    task = await _start(pipeline)
    _append(target, '{"log":"hello","stream":"stdout"}\n')
    await wait_for_rows(sink, 1)
    await asyncio.sleep(0.1)
    await _stop(task)

    assert sink.calls == [("agent_logs", {
        "user_id": "user-123",
        "agent_id": "agent-7",
        "content": "hello",
        "stream": "stdout",
    })]


@pytest.mark.asyncio
async def test_preexisting_content_is_not_replayed(tmp_path, identity):
    target = tmp_path / "app.log"
    target.write_text("old\n")
    sink = FakeSink()
    pipeline = Pipeline([PathSpec.parse(str(target))], sink, identity, poll_interval=0.02)

    task = await _start(pipeline)
    _append(target, "new\n")
    await wait_for_rows(sink, 1)
    await asyncio.sleep(0.1)
    await _stop(task)

    assert [row["content"] for row in sink.rows] == ["new"]


@pytest.mark.asyncio
async def test_lines_arrive_in_order(tmp_path, identity):
    target = tmp_path / "app.log"
    sink = FakeSink()
    pipeline = Pipeline([PathSpec.parse(str(target))], sink, identity, poll_interval=0.02)

    task = await _start(pipeline)
    for line in ("L1", "L2", "L3"):
        _append(target, line + "\n")
    await wait_for_rows(sink, 3)
    await _stop(task)

    assert [row["content"] for row in sink.rows] == ["L1", "L2", "L3"]


@pytest.mark.asyncio
async def test_malformed_json_is_never_enqueued(tmp_path, identity):
    target = tmp_path / "c.log"
    sink = FakeSink()
    pipeline = Pipeline(
        [PathSpec.parse(f"json:{target}")], sink, identity, poll_interval=0.02,
    )

    task = await _start(pipeline)
    _append(target, "{broken\n")
    _append(target, '{"log":"x","stream":"stdin"}\n')
    _append(target, '{"log":"kept","stream":"stderr"}\n')
    await wait_for_rows(sink, 1)
    await asyncio.sleep(0.1)
    await _stop(task)

    assert [(r["content"], r["stream"]) for r in sink.rows] == [("kept", "stderr")]
    assert len(sink.calls) == 1
    assert pipeline.metrics.dropped == 2


@pytest.mark.asyncio
async def test_multiple_paths_share_one_queue(tmp_path, identity):
    a = tmp_path / "a.log"
    logs = tmp_path / "more"
    sink = FakeSink()
    pipeline = Pipeline(
        [PathSpec.parse(str(a)), PathSpec.parse(f"json:{logs}/*.log")],
        sink, identity, poll_interval=0.02,
    )

    task = await _start(pipeline)
    late = logs / "late.log"
    late.write_text("")
    watcher = pipeline.watchers[1]

    async def _discovered():
        while str(late) not in watcher.readers:
            await asyncio.sleep(0.02)
    await asyncio.wait_for(_discovered(), timeout=5.0)
    await asyncio.wait_for(watcher.readers[str(late)].wait_ready(), timeout=5.0)

    _append(a, "plain line\n")
    _append(late, json.dumps({"log": "container err", "stream": "stderr"}) + "\n")
    await wait_for_rows(sink, 2)
    await _stop(task)

    assert sorted((r["content"], r["stream"]) for r in sink.rows) == [
        ("container err", "stderr"),
        ("plain line", "stdout"),
    ]
    assert sink.max_in_flight == 1


@pytest.mark.asyncio
async def test_retry_exhaustion_stops_pipeline(tmp_path, identity):
    target = tmp_path / "app.log"
    sink = FakeSink(always_fail=True)
    pipeline = Pipeline(
        [PathSpec.parse(str(target))], sink, identity,
        retry_attempts=3, retry_delay=0.01, poll_interval=0.02,
    )

    task = await _start(pipeline)
    _append(target, "doomed\n")

    with pytest.raises(DeliveryError):
        await asyncio.wait_for(task, timeout=5.0)
    assert len(sink.calls) == 3


@pytest.mark.asyncio
async def test_stdin_pipeline_finishes_after_eof(identity):
    read_fd, write_fd = os.pipe()
    sink = FakeSink(fail_first=1)
    with os.fdopen(read_fd, "rb", buffering=0) as stream:
        pipeline = Pipeline(
            [PathSpec.parse("-")], sink, identity, retry_delay=0.01, stdin=stream,
        )
        task = asyncio.create_task(pipeline.run())
        await asyncio.wait_for(pipeline.wait_ready(), timeout=5.0)
        os.write(write_fd, b"one\ntwo\n")
        os.close(write_fd)
        await asyncio.wait_for(task, timeout=5.0)

    assert [row["content"] for row in sink.rows] == ["one", "two"]
    assert pipeline.metrics.retried == 1


@pytest.mark.asyncio
async def test_interleaved_streams_keep_file_order(tmp_path, identity):
    target = tmp_path / "mixed.log"
    sink = FakeSink()
    pipeline = Pipeline(
        [PathSpec.parse(f"json:{target}")], sink, identity, poll_interval=0.02,
    )

    task = await _start(pipeline)
    envelopes = [
        {"log": "L1", "stream": "stdout"},
        {"log": "L2", "stream": "stderr"},
        {"log": "L3", "stream": "stdout"},
        {"log": "L4", "stream": "stderr"},
    ]
    _append(target, "".join(json.dumps(e) + "\n" for e in envelopes))
    await wait_for_rows(sink, 4)
    await _stop(task)

    assert [(row["content"], row["stream"]) for row in sink.rows] == [
        ("L1", "stdout"), ("L2", "stderr"), ("L3", "stdout"), ("L4", "stderr"),
    ]


@pytest.mark.asyncio
async def test_stdin_long_line_then_more_lines(identity):
    read_fd, write_fd = os.pipe()
    sink = FakeSink()
    long_line = b"x" * 70000

    def _write_all():
        os.write(write_fd, long_line + b"\nafter\n")
        os.close(write_fd)

    with os.fdopen(read_fd, "rb", buffering=0) as stream:
        pipeline = Pipeline([PathSpec.parse("-")], sink, identity, stdin=stream)
        task = asyncio.create_task(pipeline.run())
        await asyncio.wait_for(pipeline.wait_ready(), timeout=5.0)
        await asyncio.get_running_loop().run_in_executor(None, _write_all)
        await asyncio.wait_for(task, timeout=5.0)

    assert [row["content"] for row in sink.rows] == [long_line.decode(), "after"]


@pytest.mark.asyncio
async def test_stdin_redirected_from_regular_file(tmp_path, identity):
    source = tmp_path / "app.log"
    source.write_bytes(b"a\nb\n")
    sink = FakeSink()
    with open(source, "rb") as stream:
        pipeline = Pipeline([PathSpec.parse("-")], sink, identity, stdin=stream)
        await asyncio.wait_for(pipeline.run(), timeout=5.0)

    assert [row["content"] for row in sink.rows] == ["a", "b"]


def test_requires_a_path(identity):
    with pytest.raises(ValueError):
        Pipeline([], FakeSink(), identity)
