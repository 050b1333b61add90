"""Control-plane HTTP client.

Every request carries the runner key header. Transport errors, non-2xx
responses and undecodable bodies are all raised as ``ApiCallError`` so the run
loop and supervisor can log-and-continue uniformly.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, Optional

import httpx
from pydantic import ValidationError

from .bootstrap import RUNNER_API_FAILURES
from .errors import ApiCallError
from .models import Job, JobStatus, JobStatusResponse, LogRecord, RunnerIdentity

RUNNER_KEY_HEADER = "X-RUNNER-Key"

_UNSET: Any = object()


class ControlPlaneClient:
    def __init__(
        self,
        api_url: str,
        runner_key: str,
        *,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=api_url,
            headers={RUNNER_KEY_HEADER: runner_key},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ControlPlaneClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            RUNNER_API_FAILURES.labels(operation=operation).inc()
            body = exc.response.text[:200] or exc.response.reason_phrase
            raise ApiCallError(operation, body, exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            RUNNER_API_FAILURES.labels(operation=operation).inc()
            raise ApiCallError(operation, str(exc) or type(exc).__name__) from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            RUNNER_API_FAILURES.labels(operation=operation).inc()
            raise ApiCallError(operation, f"invalid JSON response: {exc}", response.status_code) from exc

    @staticmethod
    def _parse(operation: str, model: Any, payload: Any) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            RUNNER_API_FAILURES.labels(operation=operation).inc()
            raise ApiCallError(operation, f"unexpected response shape: {exc.error_count()} error(s)") from exc

    # ------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------
    async def get_current_runner(self) -> RunnerIdentity:
        payload = await self._request("get_current_runner", "GET", "runners/current")
        return self._parse("get_current_runner", RunnerIdentity, payload)

    async def activate_runner(self, runner_id: str) -> None:
        """Liveness ping."""
        await self._request("activate_runner", "POST", f"runners/{runner_id}/activate")

    # ------------------------------------------------------------
    # Runner jobs
    # ------------------------------------------------------------
    async def list_pending_jobs(self, runner_id: str) -> list[Job]:
        filter_param = json.dumps({"runnerId": {"eq": runner_id}, "status": {"eq": JobStatus.PENDING.value}})
        payload = await self._request("list_pending_jobs", "GET", "runner-jobs", params={"filter": filter_param})
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            RUNNER_API_FAILURES.labels(operation="list_pending_jobs").inc()
            raise ApiCallError("list_pending_jobs", "response has no data array")
        return [self._parse("list_pending_jobs", Job, item) for item in data]

    async def get_job(self, job_id: str) -> JobStatusResponse:
        payload = await self._request("get_job", "GET", f"runner-jobs/{job_id}")
        return self._parse("get_job", JobStatusResponse, payload)

    async def update_job(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        error_reason: Optional[str] = None,
        result: Any = _UNSET,
        logs: Optional[Iterable[LogRecord]] = None,
    ) -> JobStatusResponse:
        """Update any subset of status / errorReason / result / logs.

        Unset fields are omitted from the body.
        """
        body: dict[str, Any] = {"id": job_id}
        if status is not None:
            body["status"] = JobStatus(status).value
        if error_reason is not None:
            body["errorReason"] = error_reason
        if result is not _UNSET:
            body["result"] = result
        if logs is not None:
            body["logs"] = [record.to_wire() for record in logs]
        payload = await self._request("update_job", "PUT", f"runner-jobs/{job_id}", json=body)
        return self._parse("update_job", JobStatusResponse, payload)
