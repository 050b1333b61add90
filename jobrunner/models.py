"""Data model shared by the executor, supervisor and run loop.

Wire payloads coming from the control plane are parsed with pydantic
(camelCase aliases, unknown keys ignored). Internal values produced by the
runner itself (log records, outcomes) are plain dataclasses.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ExecutionCancelledError, ExecutionTimeoutError


class JobStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    DONE = "Done"
    ERROR = "Error"
    TIMEOUT = "Timeout"
    CANCEL_PENDING = "CancelPending"
    CANCEL_DONE = "CancelDone"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.TIMEOUT, JobStatus.CANCEL_DONE})


# ------------------------------------------------------------
# Control-plane payloads
# ------------------------------------------------------------
class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RunnerIdentity(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    name: str
    organization_id: str = Field(alias="organizationId")


class EnvironmentVariable(_WireModel):
    name: str
    value: str


class SearchParam(_WireModel):
    key: str
    value: str


class HttpRequest(_WireModel):
    search_params: list[SearchParam] = Field(default_factory=list, alias="searchParams")
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: Any = Field(None, alias="jsonBody")


class FormValue(_WireModel):
    code: str
    field_type: str = Field(alias="fieldType")
    value: Any = None


class Trigger(_WireModel):
    name: str


class Job(_WireModel):
    id: str
    status: str = JobStatus.PENDING.value
    code: Optional[str] = None
    environment_variables: list[EnvironmentVariable] = Field(default_factory=list, alias="environmentVariables")
    trigger: Optional[Trigger] = None
    http_request: Optional[HttpRequest] = Field(None, alias="httpRequest")
    form_values: Optional[list[FormValue]] = Field(None, alias="formValues")


class JobStatusResponse(_WireModel):
    status: str

    @property
    def cancel_requested(self) -> bool:
        return self.status == JobStatus.CANCEL_PENDING.value


# ------------------------------------------------------------
# Log records
# ------------------------------------------------------------
class LogSource(str, Enum):
    STDOUT = "Stdout"
    STDERR = "Stderr"


def iso_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class LogRecord:
    source: LogSource
    logged_at: datetime
    text: str

    def to_wire(self) -> dict[str, str]:
        return {"source": self.source.value, "loggedAt": iso_timestamp(self.logged_at), "text": self.text}


# ------------------------------------------------------------
# Execution outcome
# ------------------------------------------------------------
class OutcomeKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeoutError"
    CANCEL = "cancel"


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """Terminal classification of one execution attempt."""

    kind: OutcomeKind
    result: Any = None
    message: Optional[str] = None

    @classmethod
    def success(cls, result: Any) -> "ExecutionOutcome":
        return cls(OutcomeKind.SUCCESS, result=result)

    @classmethod
    def error(cls, message: str) -> "ExecutionOutcome":
        return cls(OutcomeKind.ERROR, message=message)

    @classmethod
    def timeout(cls) -> "ExecutionOutcome":
        return cls(OutcomeKind.TIMEOUT)

    @classmethod
    def cancel(cls) -> "ExecutionOutcome":
        return cls(OutcomeKind.CANCEL)

    @classmethod
    def from_error(cls, exc: BaseException) -> "ExecutionOutcome":
        if isinstance(exc, ExecutionTimeoutError):
            return cls.timeout()
        if isinstance(exc, ExecutionCancelledError):
            return cls.cancel()
        return cls.error(str(exc))


@dataclass(slots=True, frozen=True)
class TerminalReport:
    """Fields pushed to the control plane once a job is finished."""

    status: JobStatus
    error_reason: Optional[str] = None
    result: Any = None
    has_result: bool = False


_STATUS_BY_KIND = {
    OutcomeKind.SUCCESS: JobStatus.DONE,
    OutcomeKind.ERROR: JobStatus.ERROR,
    OutcomeKind.TIMEOUT: JobStatus.TIMEOUT,
    OutcomeKind.CANCEL: JobStatus.CANCEL_DONE,
}


def terminal_report(outcome: ExecutionOutcome) -> TerminalReport:
    status = _STATUS_BY_KIND[outcome.kind]
    if outcome.kind is OutcomeKind.SUCCESS:
        return TerminalReport(status=status, result=outcome.result, has_result=True)
    if outcome.kind is OutcomeKind.ERROR:
        return TerminalReport(status=status, error_reason=outcome.message)
    return TerminalReport(status=status)
