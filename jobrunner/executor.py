"""Code executor: one sandboxed subprocess per job.

Responsibilities:
- Materialize a workspace (job code, entry program, structured context)
- Spawn the entry program through a ``CodeSandbox``
- Race natural exit against cancellation and the wall-clock timeout
- Resolve an ``ExecutionOutcome`` and remove the workspace on every path

The caller gets the live log sequence immediately; the outcome is a task
that resolves once the process has exited and the workspace is gone.
"""
from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Iterable, Optional

import structlog

from . import sandbox_entry
from .errors import (
    ExecutionCancelledError,
    ExecutionTimeoutError,
    ProcessExitError,
    ResultReadError,
    RunnerError,
    SetupError,
    SpawnError,
)
from .log_relay import LogRelay
from .models import EnvironmentVariable, ExecutionOutcome, FormValue, HttpRequest
from .sandbox import CodeSandbox, SandboxProcess, SandboxRequest, SubprocessSandbox

logger = structlog.get_logger().bind(component="executor")

MAIN_FILE = sandbox_entry.MAIN_FILE
ENTRY_FILE = "entry.py"
CONTEXT_FILE = sandbox_entry.CONTEXT_FILE
RESULT_FILE = "result.json"
ENTRY_SOURCE = Path(sandbox_entry.__file__)


@dataclass(slots=True)
class Execution:
    logs: LogRelay
    outcome: Awaitable[ExecutionOutcome]


# ------------------------------------------------------------
# Workspace
# ------------------------------------------------------------
def build_context_payload(
    *,
    env: Iterable[EnvironmentVariable],
    trigger_name: Optional[str],
    http_request: Optional[HttpRequest],
    form_values: Optional[Iterable[FormValue]],
) -> dict[str, Any]:
    """JSON document read by the entry program to build ``main``'s context."""
    trigger: Optional[dict[str, Any]] = None
    if isinstance(trigger_name, str):
        trigger = {"name": trigger_name, "request": None, "formValues": None}
        if http_request is not None:
            trigger["request"] = {
                "searchParams": [[p.key, p.value] for p in http_request.search_params],
                "headers": dict(http_request.headers),
                "jsonBody": http_request.json_body,
            }
        if form_values is not None:
            trigger["formValues"] = [
                {"code": f.code, "fieldType": f.field_type, "value": f.value} for f in form_values
            ]
    return {
        "env": {e.name: e.value for e in env},
        "trigger": trigger,
        "resultFile": RESULT_FILE,
    }


def prepare_workspace(workspace: Path, code: str, context: dict[str, Any]) -> SandboxRequest:
    try:
        (workspace / MAIN_FILE).write_text(code, encoding="utf-8")
        shutil.copyfile(ENTRY_SOURCE, workspace / ENTRY_FILE)
        (workspace / CONTEXT_FILE).write_text(json.dumps(context), encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
        raise SetupError(f"failed to prepare workspace: {exc}") from exc
    return SandboxRequest(
        workspace=workspace,
        entry=workspace / ENTRY_FILE,
        result_path=workspace / RESULT_FILE,
    )


def remove_workspace(workspace: Path) -> None:
    shutil.rmtree(workspace, ignore_errors=True)
    if workspace.exists():
        logger.warning("workspace_cleanup_incomplete", workspace=str(workspace))


def read_result(result_path: Path) -> Any:
    try:
        return json.loads(result_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ResultReadError(f"failed to read result: {exc}") from exc


# ------------------------------------------------------------
# Outcome resolution
# ------------------------------------------------------------
def resolve_outcome(exit_code: int, kill_cause: Optional[RunnerError], result_path: Path) -> ExecutionOutcome:
    # the recorded kill cause wins over whatever exit status the kill produced
    if kill_cause is not None:
        return ExecutionOutcome.from_error(kill_cause)
    if exit_code != 0:
        return ExecutionOutcome.from_error(ProcessExitError(exit_code))
    try:
        return ExecutionOutcome.success(read_result(result_path))
    except ResultReadError as exc:
        return ExecutionOutcome.from_error(exc)


async def _await_outcome(
    process: SandboxProcess,
    sandbox: CodeSandbox,
    request: SandboxRequest,
    timeout: float,
    signal: asyncio.Event,
) -> ExecutionOutcome:
    kill_cause: Optional[RunnerError] = None
    exit_task = asyncio.ensure_future(process.wait())
    cancel_task = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait(
            {exit_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if exit_task not in done:
            if cancel_task in done:
                kill_cause = ExecutionCancelledError("cancellation requested")
            else:
                kill_cause = ExecutionTimeoutError(f"execution exceeded {timeout:g}s")
            logger.info("sandbox_kill", pid=process.pid, cause=type(kill_cause).__name__)
            sandbox.terminate(process)
        exit_code = await exit_task
        outcome = resolve_outcome(exit_code, kill_cause, request.result_path)
        logger.debug("execution_finished", pid=process.pid, exit_code=exit_code, outcome=outcome.kind.value)
        return outcome
    finally:
        cancel_task.cancel()
        if not exit_task.done():
            sandbox.terminate(process)
            exit_task.cancel()
        remove_workspace(request.workspace)


def _failed_execution(exc: RunnerError) -> Execution:
    logger.warning("execution_setup_failed", error=str(exc), kind=type(exc).__name__)
    future: asyncio.Future[ExecutionOutcome] = asyncio.get_running_loop().create_future()
    future.set_result(ExecutionOutcome.from_error(exc))
    return Execution(logs=LogRelay.closed(), outcome=future)


async def execute_job_code(
    *,
    code: str,
    env: Iterable[EnvironmentVariable],
    trigger_name: Optional[str],
    http_request: Optional[HttpRequest],
    form_values: Optional[Iterable[FormValue]],
    timeout: float,
    signal: asyncio.Event,
    sandbox: Optional[CodeSandbox] = None,
    workspace_root: Optional[str] = None,
) -> Execution:
    """Start executing ``code`` and return its live logs plus a pending outcome.

    ``timeout`` is in seconds. Setting ``signal`` requests cancellation.
    """
    sandbox = sandbox or SubprocessSandbox()
    try:
        workspace = Path(tempfile.mkdtemp(prefix="job-", dir=workspace_root))
    except OSError as exc:
        return _failed_execution(SetupError(f"failed to create workspace: {exc}"))

    try:
        context = build_context_payload(
            env=env, trigger_name=trigger_name, http_request=http_request, form_values=form_values
        )
        request = prepare_workspace(workspace, code, context)
        process = await sandbox.spawn(request)
    except (SetupError, SpawnError) as exc:
        remove_workspace(workspace)
        return _failed_execution(exc)

    logs = LogRelay.start(process.stdout, process.stderr)
    outcome = asyncio.create_task(
        _await_outcome(process, sandbox, request, timeout, signal),
        name=f"execution-{process.pid}",
    )
    return Execution(logs=logs, outcome=outcome)
