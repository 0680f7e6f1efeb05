from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import pytest

from atomrun.exec.capture import stream_to_buffer
from atomrun.exec.sandbox import LogBuffer
from atomrun.exec.timeout import describe_signal, stop_process, wait_with_timeout


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@pytest.mark.asyncio
async def test_wait_with_timeout_returns_exit_code_when_process_finishes() -> None:
    proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "raise SystemExit(4)")
    timed_out, exit_code = await wait_with_timeout(proc, timeout_sec=10.0)
    assert timed_out is False
    assert exit_code == 4


@pytest.mark.asyncio
async def test_wait_with_timeout_times_out_and_stops_process() -> None:
    proc = await asyncio.create_subprocess_exec(
        sys.executable, "-c", "import time; time.sleep(10)", start_new_session=True
    )
    timed_out, exit_code = await wait_with_timeout(proc, timeout_sec=0.1, grace_sec=1.0)
    assert timed_out is True
    assert exit_code == -signal.SIGTERM
    assert proc.returncode is not None


@pytest.mark.asyncio
async def test_stop_process_escalates_to_kill() -> None:
    script = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(10)"
    )
    proc = await asyncio.create_subprocess_exec(
        sys.executable, "-c", script, stdout=asyncio.subprocess.PIPE, start_new_session=True
    )
    assert proc.stdout is not None
    await proc.stdout.readline()
    assert await stop_process(proc, grace_sec=0.2) == -signal.SIGKILL
    assert await stop_process(proc, grace_sec=0.2) == -signal.SIGKILL


def test_describe_signal_names_limit_violations() -> None:
    assert describe_signal(-signal.SIGXCPU) == "cpu time limit exceeded"
    assert describe_signal(-signal.SIGKILL).startswith("killed")
    assert describe_signal(-signal.SIGTERM) == "terminated by signal SIGTERM"


@pytest.mark.asyncio
async def test_stream_to_buffer_splits_lines_and_mirrors_to_file(tmp_path: Path) -> None:
    buffer = LogBuffer(capacity=10)
    log_path = tmp_path / "logs" / "a.out.log"
    await stream_to_buffer(_reader(b"one\r\ntwo\nlast-no-newline"), buffer, "stdout", log_path)
    assert buffer.tail(10).text() == ["one", "two", "last-no-newline"]
    assert log_path.read_bytes() == b"one\r\ntwo\nlast-no-newline"


@pytest.mark.asyncio
async def test_stream_to_buffer_replaces_invalid_utf8() -> None:
    buffer = LogBuffer(capacity=10)
    await stream_to_buffer(_reader(b"\xff\xfeok\n"), buffer, "stderr")
    [line] = buffer.tail(1).lines
    assert line.stream == "stderr"
    assert line.text.endswith("ok")


@pytest.mark.asyncio
async def test_stream_to_buffer_ignores_symlink_log_path(tmp_path: Path) -> None:
    target = tmp_path / "outside.log"
    target.write_text("keep\n", encoding="utf-8")
    link = tmp_path / "capture.log"
    link.symlink_to(target)
    buffer = LogBuffer(capacity=10)
    await stream_to_buffer(_reader(b"secret\n"), buffer, "stdout", link)
    assert buffer.tail(1).text() == ["secret"]
    assert target.read_text(encoding="utf-8") == "keep\n"


@pytest.mark.asyncio
async def test_stream_to_buffer_accepts_missing_stream() -> None:
    buffer = LogBuffer(capacity=2)
    await stream_to_buffer(None, buffer, "stdout")
    assert buffer.tail(2).text() == []
