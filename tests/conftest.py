import os
import sys

import pytest

# Keep test output quiet and deterministic
os.environ.setdefault("LOG_LEVEL", "WARNING")

from jobrunner.bootstrap import AppContext, Settings  # noqa: E402

import structlog  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        runner_key="test-key",
        api_url="http://control.test/api",
        poll_interval_ms=20,
        execution_timeout_ms=10_000,
        liveness_interval_ms=60_000,
        log_flush_interval_ms=20,
        workspace_root=str(tmp_path),
        sandbox_python=sys.executable,
        lock_file=None,
        metrics_port=None,
    )


@pytest.fixture
def app_context(settings):
    return AppContext(settings=settings, logger=structlog.get_logger().bind(subsystem="test"))
