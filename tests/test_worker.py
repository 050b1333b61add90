import asyncio
import json
from pathlib import Path

import httpx
import pytest

from jobrunner.api import ControlPlaneClient
from jobrunner.errors import StartupError
from jobrunner.models import JobStatus
from jobrunner.sandbox import SubprocessSandbox
from jobrunner.worker import NO_CODE_MESSAGE, Runner, runner_lock


class FakeControlPlane:
    """In-memory control plane served through ``httpx.MockTransport``."""

    def __init__(self, jobs=(), *, cancel_jobs=(), fail_status_updates=0, fail_identity=False, fail_list=False):
        self.jobs = {job["id"]: dict(job, status="Pending") for job in jobs}
        self.cancel_jobs = set(cancel_jobs)
        self.fail_status_updates = fail_status_updates
        self.fail_identity = fail_identity
        self.fail_list = fail_list
        self.status_history = {job_id: [] for job_id in self.jobs}
        self.bodies = {job_id: [] for job_id in self.jobs}
        self.list_calls = 0
        self.activations = 0

    def transport(self):
        return httpx.MockTransport(self.handle)

    def handle(self, request):
        path = request.url.path.removeprefix("/api/")
        if path == "runners/current":
            if self.fail_identity:
                return httpx.Response(401, text="bad key")
            return httpx.Response(200, json={"id": "r1", "name": "runner", "organizationId": "o1"})
        if path == "runners/r1/activate":
            self.activations += 1
            return httpx.Response(204)
        if path == "runner-jobs":
            self.list_calls += 1
            if self.fail_list:
                return httpx.Response(503, text="busy")
            pending = [job for job in self.jobs.values() if job["status"] == "Pending"]
            return httpx.Response(200, json={"data": pending})
        job_id = path.removeprefix("runner-jobs/")
        job = self.jobs[job_id]
        if request.method == "PUT":
            body = json.loads(request.content)
            self.bodies[job_id].append(body)
            if "status" in body:
                if self.fail_status_updates:
                    self.fail_status_updates -= 1
                    return httpx.Response(500, text="boom")
                job["status"] = body["status"]
                self.status_history[job_id].append(body["status"])
        return httpx.Response(200, json={"status": self._visible_status(job)})

    def _visible_status(self, job):
        if job["id"] in self.cancel_jobs and job["status"] == "Running":
            return "CancelPending"
        return job["status"]

    def logs_text(self, job_id):
        uploads = [body["logs"] for body in self.bodies[job_id] if "logs" in body]
        return "".join(record["text"] for record in uploads[-1]) if uploads else ""


class SlowControlPlane(FakeControlPlane):
    """Adds latency to every control-plane call."""

    delay = 0.3

    async def handle_slowly(self, request):
        await asyncio.sleep(self.delay)
        return self.handle(request)

    def transport(self):
        return httpx.MockTransport(self.handle_slowly)


def make_runner(app_context, plane):
    api = ControlPlaneClient(
        app_context.settings.api_url,
        app_context.settings.runner_key,
        transport=plane.transport(),
    )
    return Runner(app_context, api, sandbox=SubprocessSandbox(app_context.settings.sandbox_python))


@pytest.mark.asyncio
async def test_successful_job_reports_running_then_done(app_context):
    plane = FakeControlPlane(
        [{"id": "j1", "code": "def main(context):\n    print('working')\n    return {'x': 1}\n"}]
    )
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    reports = await runner.poll_once()

    assert [r.status for r in reports] == [JobStatus.DONE]
    assert plane.status_history["j1"] == ["Running", "Done"]
    done = plane.bodies["j1"][-1]
    assert done == {"id": "j1", "status": "Done", "result": {"x": 1}}
    assert "working" in plane.logs_text("j1")

    # the finished job is no longer pending
    assert await runner.poll_once() == []


@pytest.mark.asyncio
async def test_cancel_pending_terminates_job(app_context):
    code = "import time\n\ndef main(context):\n    while True:\n        print('tick', flush=True)\n        time.sleep(0.05)\n"
    plane = FakeControlPlane([{"id": "j1", "code": code}], cancel_jobs={"j1"})
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    reports = await asyncio.wait_for(runner.poll_once(), timeout=10)

    assert reports[0].status is JobStatus.CANCEL_DONE
    assert plane.status_history["j1"] == ["Running", "CancelDone"]


@pytest.mark.asyncio
async def test_timeout_reports_timeout(app_context):
    app_context.settings.execution_timeout_ms = 300
    code = "import time\n\ndef main(context):\n    time.sleep(30)\n"
    plane = FakeControlPlane([{"id": "j1", "code": code}])
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    reports = await asyncio.wait_for(runner.poll_once(), timeout=10)

    assert reports[0].status is JobStatus.TIMEOUT
    assert plane.status_history["j1"] == ["Running", "Timeout"]


@pytest.mark.asyncio
async def test_job_without_code_reports_error(app_context):
    plane = FakeControlPlane([{"id": "j1", "code": ""}, {"id": "j2"}])
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    await runner.poll_once()

    for job_id in ("j1", "j2"):
        assert plane.status_history[job_id] == ["Running", "Error"]
        assert plane.bodies[job_id][-1]["errorReason"] == NO_CODE_MESSAGE


@pytest.mark.asyncio
async def test_failing_exit_reports_error_with_code(app_context):
    plane = FakeControlPlane([{"id": "j1", "code": "import sys\n\ndef main(context):\n    sys.exit(1)\n"}])
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    await runner.poll_once()

    assert plane.status_history["j1"] == ["Running", "Error"]
    assert "1" in plane.bodies["j1"][-1]["errorReason"]


@pytest.mark.asyncio
async def test_api_fault_during_job_is_reported_as_error(app_context):
    plane = FakeControlPlane([{"id": "j1", "code": "def main(context):\n    return 1\n"}], fail_status_updates=1)
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    reports = await runner.poll_once()

    assert reports[0].status is JobStatus.ERROR
    assert reports[0].error_reason.startswith("ApiCallError")
    assert plane.status_history["j1"] == ["Error"]


@pytest.mark.asyncio
async def test_list_failure_is_treated_as_no_jobs(app_context):
    plane = FakeControlPlane(fail_list=True)
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    assert await runner.poll_once() == []
    assert plane.list_calls == 1


@pytest.mark.asyncio
async def test_identity_failure_is_startup_error(app_context):
    runner = make_runner(app_context, FakeControlPlane(fail_identity=True))
    with pytest.raises(StartupError):
        await runner.resolve_identity()


@pytest.mark.asyncio
async def test_run_forever_polls_and_pings(app_context):
    app_context.settings.liveness_interval_ms = 20
    plane = FakeControlPlane()
    runner = make_runner(app_context, plane)
    task = asyncio.create_task(runner.run_forever())
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert plane.list_calls >= 2
    assert plane.activations >= 1


def test_runner_lock_refuses_second_holder(settings, tmp_path):
    settings.lock_file = str(tmp_path / "runner.lock")
    with runner_lock(settings):
        with pytest.raises(StartupError):
            with runner_lock(settings):
                pass
    with runner_lock(settings):
        pass


@pytest.mark.asyncio
async def test_undecodable_output_reports_error_and_cleans_up(app_context):
    code = (
        "import sys\n\n"
        "def main(context):\n"
        "    sys.stdout.buffer.write(b'\\xff' + b'x' * 2_000_000)\n"
        "    sys.stdout.flush()\n"
        "    return 1\n"
    )
    plane = SlowControlPlane([{"id": "j1", "code": code}])
    runner = make_runner(app_context, plane)
    await runner.resolve_identity()
    reports = await asyncio.wait_for(runner.poll_once(), timeout=20)

    assert reports[0].status is JobStatus.ERROR
    assert reports[0].error_reason.startswith("LogDecodeError")
    assert plane.status_history["j1"] == ["Running", "Error"]
    assert list(Path(app_context.settings.workspace_root).iterdir()) == []
