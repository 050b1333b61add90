import asyncio
import sys

import pytest

from jobrunner.errors import LogDecodeError
from jobrunner.log_relay import CHUNK_SIZE, LogRelay
from jobrunner.models import LogSource


async def _collect(relay):
    return [record async for record in relay]


@pytest.mark.asyncio
async def test_relay_emits_every_chunk_from_both_streams():
    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    relay = LogRelay.start(stdout, stderr)
    consumer = asyncio.create_task(_collect(relay))

    stdout.feed_data(b"out-1\n")
    stderr.feed_data(b"err-1\n")
    await asyncio.sleep(0.01)
    stdout.feed_data(b"out-2\n")
    stdout.feed_eof()
    await asyncio.sleep(0.01)
    assert not consumer.done()  # stderr still open
    stderr.feed_data(b"err-2\n")
    stderr.feed_eof()

    records = await asyncio.wait_for(consumer, timeout=2)
    by_source = {
        source: "".join(r.text for r in records if r.source is source)
        for source in (LogSource.STDOUT, LogSource.STDERR)
    }
    assert by_source[LogSource.STDOUT] == "out-1\nout-2\n"
    assert by_source[LogSource.STDERR] == "err-1\nerr-2\n"
    assert all(r.logged_at.tzinfo is not None for r in records)


@pytest.mark.asyncio
async def test_relay_reassembles_split_multibyte_sequence():
    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    relay = LogRelay.start(stdout, stderr)
    consumer = asyncio.create_task(_collect(relay))
    encoded = "héllo".encode("utf-8")
    stdout.feed_data(encoded[:2])  # splits the two-byte "é"
    await asyncio.sleep(0.01)
    stdout.feed_data(encoded[2:])
    stdout.feed_eof()
    stderr.feed_eof()
    records = await asyncio.wait_for(consumer, timeout=2)
    assert "".join(r.text for r in records) == "héllo"


@pytest.mark.asyncio
async def test_relay_large_output_not_dropped():
    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    relay = LogRelay.start(stdout, stderr)
    payload = b"x" * (CHUNK_SIZE * 3 + 17)
    stdout.feed_data(payload)
    stdout.feed_eof()
    stderr.feed_eof()
    records = await asyncio.wait_for(_collect(relay), timeout=2)
    assert sum(len(r.text) for r in records) == len(payload)


@pytest.mark.asyncio
async def test_relay_decode_fault_raises_to_consumer():
    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    relay = LogRelay.start(stdout, stderr)
    stdout.feed_data(b"\xff\xfe not utf-8")
    stdout.feed_eof()
    stderr.feed_eof()
    with pytest.raises(LogDecodeError):
        await asyncio.wait_for(_collect(relay), timeout=2)


@pytest.mark.asyncio
async def test_closed_relay_is_empty():
    assert await _collect(LogRelay.closed()) == []


@pytest.mark.asyncio
async def test_relay_single_consumer():
    relay = LogRelay.closed()
    await _collect(relay)
    with pytest.raises(RuntimeError):
        relay.__aiter__()


@pytest.mark.asyncio
async def test_decode_fault_keeps_draining_so_process_can_exit():
    script = "import sys; sys.stdout.buffer.write(b'\\xff' + b'x' * 2_000_000); sys.stdout.flush()"
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        script,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    relay = LogRelay.start(process.stdout, process.stderr)
    with pytest.raises(LogDecodeError):
        await asyncio.wait_for(_collect(relay), timeout=10)
    # nothing consumes the relay anymore, yet the writer must not block on a full pipe
    assert await asyncio.wait_for(process.wait(), timeout=10) == 0
