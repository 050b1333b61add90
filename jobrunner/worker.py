"""Runner worker loop.

Responsibilities:
- Resolve the runner identity once at startup (fatal when it fails)
- Poll the control plane for pending jobs on a fixed interval
- Run jobs strictly one at a time: Running -> execute -> terminal status
- Keep an independent liveness ping going; its failures are only logged

Every per-job fault is caught here and reported as ``Error`` so the loop
itself never dies because of a job.
"""
from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Iterator, Optional
from urllib.parse import urljoin

import structlog
from filelock import FileLock, Timeout

from .api import ControlPlaneClient
from .bootstrap import RUNNER_JOB_DURATION_SECONDS, RUNNER_JOBS_TOTAL, AppContext, Settings, bootstrap
from .errors import ApiCallError, StartupError
from .executor import execute_job_code
from .models import (
    ExecutionOutcome,
    Job,
    JobStatus,
    RunnerIdentity,
    TerminalReport,
    terminal_report,
)
from .sandbox import CodeSandbox, SubprocessSandbox
from .supervisor import LogFlushSupervisor

NO_CODE_MESSAGE = "no executable code"


class Runner:
    def __init__(self, ctx: AppContext, api: ControlPlaneClient, *, sandbox: Optional[CodeSandbox] = None) -> None:
        self.ctx = ctx
        self.settings: Settings = ctx.settings
        self.api = api
        self.sandbox = sandbox or SubprocessSandbox(ctx.settings.sandbox_python)
        self.logger = ctx.logger.bind(component="worker")
        self.identity: Optional[RunnerIdentity] = None

    # ------------------------------------------------------------
    # Startup & liveness
    # ------------------------------------------------------------
    async def resolve_identity(self) -> RunnerIdentity:
        try:
            identity = await self.api.get_current_runner()
        except ApiCallError as exc:
            raise StartupError(f"cannot resolve runner identity: {exc}") from exc
        self.identity = identity
        self.logger.info(
            "runner_identity",
            runner_id=identity.id,
            name=identity.name,
            url=urljoin(self.settings.api_url or "", f"/o/{identity.organization_id}/runners/{identity.id}"),
        )
        return identity

    async def liveness_loop(self, runner_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.liveness_interval_seconds)
            try:
                await self.api.activate_runner(runner_id)
            except Exception as exc:
                self.logger.error("runner_activate_failed", error=str(exc))

    # ------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------
    async def poll_once(self) -> list[TerminalReport]:
        if self.identity is None:
            raise RuntimeError("resolve_identity() must run before polling")
        try:
            jobs = await self.api.list_pending_jobs(self.identity.id)
        except ApiCallError as exc:
            self.logger.error("list_pending_jobs_failed", error=str(exc))
            return []
        if jobs:
            self.logger.info("jobs_found", job_ids=[job.id for job in jobs])
        reports = []
        for job in jobs:
            reports.append(await self.process_job(job))
        return reports

    async def run_forever(self) -> None:
        identity = await self.resolve_identity()
        liveness = asyncio.create_task(self.liveness_loop(identity.id), name="runner-liveness")
        self.logger.info("waiting_for_jobs", poll_interval_ms=self.settings.poll_interval_ms)
        try:
            while True:
                await self.poll_once()
                await asyncio.sleep(self.settings.poll_interval_seconds)
        finally:
            liveness.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await liveness

    # ------------------------------------------------------------
    # Job state machine
    # ------------------------------------------------------------
    async def process_job(self, job: Job) -> TerminalReport:
        log = self.logger.bind(job_id=job.id)
        log.info("job_started")
        started = time.perf_counter()
        try:
            await self.api.update_job(job.id, status=JobStatus.RUNNING)
            outcome = await self.execute(job, log)
            report = terminal_report(outcome)
            await self._push_report(job.id, report)
            log.info("job_finished", outcome=outcome.kind.value, status=report.status.value)
        except Exception as exc:
            log.exception("job_failed", error=str(exc))
            report = TerminalReport(status=JobStatus.ERROR, error_reason=f"{type(exc).__name__}: {exc}")
            try:
                await self._push_report(job.id, report)
            except Exception as report_exc:
                log.error("job_error_report_failed", error=str(report_exc))
        RUNNER_JOBS_TOTAL.labels(status=report.status.value).inc()
        RUNNER_JOB_DURATION_SECONDS.observe(time.perf_counter() - started)
        return report

    async def execute(self, job: Job, log: structlog.BoundLogger) -> ExecutionOutcome:
        if not job.code:
            return ExecutionOutcome.error(NO_CODE_MESSAGE)

        cancel = asyncio.Event()
        execution = await execute_job_code(
            code=job.code,
            env=job.environment_variables,
            trigger_name=job.trigger.name if job.trigger else None,
            http_request=job.http_request,
            form_values=job.form_values,
            timeout=self.settings.execution_timeout_seconds,
            signal=cancel,
            sandbox=self.sandbox,
            workspace_root=self.settings.workspace_root,
        )
        supervisor = LogFlushSupervisor(
            self.api,
            job.id,
            cancel.set,
            interval=self.settings.log_flush_interval_seconds,
            logger=log,
        )
        try:
            await supervisor.run(execution.logs)
        except BaseException:
            # do not leave the subprocess or its workspace behind
            cancel.set()
            with contextlib.suppress(Exception):
                await execution.outcome
            raise
        return await execution.outcome

    async def _push_report(self, job_id: str, report: TerminalReport) -> None:
        if report.has_result:
            await self.api.update_job(job_id, status=report.status, result=report.result)
        else:
            await self.api.update_job(job_id, status=report.status, error_reason=report.error_reason)


# ------------------------------------------------------------
# Locking
# ------------------------------------------------------------
@contextlib.contextmanager
def runner_lock(settings: Settings) -> Iterator[None]:
    """Hold ``LOCK_FILE`` for the runner lifetime so two runners never share it."""
    if not settings.lock_file:
        yield
        return
    lock = FileLock(settings.lock_file)
    try:
        lock.acquire(timeout=1)
    except Timeout as exc:
        raise StartupError(f"another runner holds {settings.lock_file}") from exc
    try:
        yield
    finally:
        if lock.is_locked:
            lock.release()


# ------------------------------------------------------------
# Entry points
# ------------------------------------------------------------
async def serve(ctx: AppContext, *, sandbox: Optional[CodeSandbox] = None, transport=None) -> None:
    settings = ctx.settings
    if not settings.runner_key or not settings.api_url:
        raise StartupError("runner key and API URL are required")
    with runner_lock(settings):
        async with ControlPlaneClient(
            settings.api_url,
            settings.runner_key,
            timeout=settings.httpx_timeout,
            transport=transport,
        ) as api:
            await Runner(ctx, api, sandbox=sandbox).run_forever()


async def run_runner(
    runner_key: str,
    api_url: str,
    interval: int = 30_000,
    timeout: int = 300_000,
) -> None:
    """Run the runner until the process is stopped.

    ``interval`` is the polling interval and ``timeout`` the per-job execution
    limit, both in milliseconds.
    """
    ctx = await bootstrap(
        force=True,
        runner_key=runner_key,
        api_url=str(api_url),
        poll_interval_ms=interval,
        execution_timeout_ms=timeout,
    )
    await serve(ctx)
