"""Error taxonomy for the runner.

Execution-path errors never escape the executor: they are converted to a
terminal ``ExecutionOutcome`` (see ``models.ExecutionOutcome.from_error``).
``ApiCallError`` wraps every control-plane failure so callers can decide to
log-and-continue without knowing about httpx.
"""
from __future__ import annotations

from typing import Optional


class RunnerError(Exception):
    """Base class for runner failures."""


class SetupError(RunnerError):
    """Workspace or file I/O failure before the subprocess is spawned."""


class SpawnError(RunnerError):
    """The sandbox could not start the subprocess."""


class ResultReadError(RunnerError):
    """Result file missing, unreadable or not valid JSON."""


class ProcessExitError(RunnerError):
    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"process exited with code {exit_code}")


class ExecutionTimeoutError(RunnerError):
    """Subprocess terminated because the wall-clock timeout elapsed."""


class ExecutionCancelledError(RunnerError):
    """Subprocess terminated because cancellation was requested."""


class LogDecodeError(RunnerError):
    """A subprocess output stream produced bytes that are not valid UTF-8."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        super().__init__(f"failed to decode {source} output: {reason}")


class ApiCallError(RunnerError):
    def __init__(self, operation: str, message: str, status_code: Optional[int] = None) -> None:
        self.operation = operation
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{operation} failed{detail}: {message}")


class StartupError(RunnerError):
    """Unrecoverable failure while starting the runner."""
