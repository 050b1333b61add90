"""Merge a subprocess's stdout and stderr into one log record sequence.

One reader task per stream pushes records onto an unbounded queue so the
subprocess is never blocked on a full pipe, whatever the consumer does.
The sequence has a single consumer and ends once both streams hit EOF.
"""
from __future__ import annotations

import asyncio
import codecs
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from .bootstrap import RUNNER_LOG_RECORDS
from .errors import LogDecodeError
from .models import LogRecord, LogSource

CHUNK_SIZE = 4096

_STREAM_DONE = object()


class LogRelay:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._open_streams = 0
        self._consumed = False

    @classmethod
    def start(cls, stdout: Optional[asyncio.StreamReader], stderr: Optional[asyncio.StreamReader]) -> "LogRelay":
        relay = cls()
        if stdout is not None:
            relay._attach(stdout, LogSource.STDOUT)
        if stderr is not None:
            relay._attach(stderr, LogSource.STDERR)
        return relay

    @classmethod
    def closed(cls) -> "LogRelay":
        """An empty sequence that is already finished."""
        return cls()

    def _attach(self, stream: asyncio.StreamReader, source: LogSource) -> None:
        self._open_streams += 1
        task = asyncio.create_task(self._pump(stream, source), name=f"log-relay-{source.value.lower()}")
        self._tasks.append(task)

    async def _pump(self, stream: asyncio.StreamReader, source: LogSource) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")()
        try:
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                final = not chunk
                text = decoder.decode(chunk, final=final)
                if text:
                    RUNNER_LOG_RECORDS.labels(source=source.value).inc()
                    self._queue.put_nowait(LogRecord(source=source, logged_at=datetime.now(timezone.utc), text=text))
                if final:
                    break
        except UnicodeDecodeError as exc:
            self._queue.put_nowait(LogDecodeError(source.value, exc.reason))
            # keep reading to EOF so a paused pipe never blocks the subprocess
            await self._discard(stream)
        except Exception as exc:
            self._queue.put_nowait(exc)
        finally:
            self._queue.put_nowait(_STREAM_DONE)

    @staticmethod
    async def _discard(stream: asyncio.StreamReader) -> None:
        try:
            while await stream.read(CHUNK_SIZE):
                pass
        except OSError:
            # the decode fault was already reported for this stream
            return

    def __aiter__(self) -> AsyncIterator[LogRecord]:
        if self._consumed:
            raise RuntimeError("log relay supports a single consumer")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LogRecord]:
        remaining = self._open_streams
        while remaining:
            item = await self._queue.get()
            if item is _STREAM_DONE:
                remaining -= 1
                continue
            if isinstance(item, BaseException):
                raise item
            yield item

