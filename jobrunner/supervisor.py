"""Log flush & cancellation supervisor.

Bridges the push-based log relay to the control plane's pull/push API while a
job runs. The drain side appends records to a ``SupervisorState``; the tick
side, on a fixed cadence, either uploads the accumulated buffer (when dirty)
or just reads the job status, and fires the cancel callback when the control
plane reports ``CancelPending``. When the relay ends the ticker is stopped,
any in-flight tick completes, and one final upload always happens.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Optional, Protocol

import structlog

from .errors import ApiCallError
from .models import JobStatusResponse, LogRecord

DEFAULT_FLUSH_INTERVAL = 1.0  # seconds


class JobApi(Protocol):
    async def get_job(self, job_id: str) -> JobStatusResponse: ...

    async def update_job(self, job_id: str, **fields: Any) -> JobStatusResponse: ...


@dataclass
class SupervisorState:
    """Accumulated log buffer shared by the drain and tick tasks."""

    records: list[LogRecord] = field(default_factory=list)
    flushed: int = 0
    uploads: int = 0

    @property
    def dirty(self) -> bool:
        return len(self.records) > self.flushed

    def append(self, record: LogRecord) -> None:
        self.records.append(record)

    def snapshot(self) -> list[LogRecord]:
        return list(self.records)

    def mark_flushed(self, count: int) -> None:
        # records appended while an upload was in flight stay dirty
        self.flushed = max(self.flushed, count)
        self.uploads += 1


class LogFlushSupervisor:
    def __init__(
        self,
        api: JobApi,
        job_id: str,
        on_cancel: Callable[[], None],
        *,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        logger: Optional[Any] = None,
    ) -> None:
        self.api = api
        self.job_id = job_id
        self.on_cancel = on_cancel
        self.interval = interval
        self.state = SupervisorState()
        self.logger = (logger or structlog.get_logger()).bind(component="supervisor", job_id=job_id)
        self._stopping = asyncio.Event()

    async def run(self, logs: AsyncIterable[LogRecord]) -> None:
        """Drain ``logs`` until it ends, then flush once more and return.

        An error raised by ``logs`` is re-raised after the final flush.
        """
        ticker = asyncio.create_task(self._tick_loop(), name=f"log-flush-{self.job_id}")
        try:
            async for record in logs:
                self.state.append(record)
        finally:
            self._stopping.set()
            await ticker
            await self._final_flush()

    async def _tick_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.tick()

    async def tick(self) -> None:
        try:
            if self.state.dirty:
                pending = self.state.snapshot()
                response = await self.api.update_job(self.job_id, logs=pending)
                self.state.mark_flushed(len(pending))
            else:
                response = await self.api.get_job(self.job_id)
        except ApiCallError as exc:
            self.logger.warning("log_flush_tick_failed", error=str(exc))
            return
        except Exception as exc:
            self.logger.exception("log_flush_tick_error", error=str(exc))
            return
        self._check_cancel(response)

    def _check_cancel(self, response: JobStatusResponse) -> None:
        if response.cancel_requested:
            self.logger.info("job_cancel_requested")
            self.on_cancel()

    async def _final_flush(self) -> None:
        records = self.state.snapshot()
        try:
            await self.api.update_job(self.job_id, logs=records)
        except ApiCallError as exc:
            self.logger.error("log_final_flush_failed", error=str(exc), records=len(records))
            return
        except Exception as exc:
            self.logger.exception("log_final_flush_error", error=str(exc), records=len(records))
            return
        self.state.mark_flushed(len(records))
        self.logger.debug("log_final_flush", records=len(records), uploads=self.state.uploads)
