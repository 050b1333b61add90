"""Command-line launcher.

Usage:
  jobrunner --runner-key KEY --api-url https://example.test/api/
  python -m jobrunner

Every option falls back to its environment variable (RUNNER_KEY, API_URL,
POLL_INTERVAL_MS, EXECUTION_TIMEOUT_MS, LOG_LEVEL).
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from .bootstrap import bootstrap
from .errors import StartupError
from .worker import serve


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobrunner", description="Execute control-plane jobs in local sandboxes.")
    parser.add_argument("--runner-key", default=os.environ.get("RUNNER_KEY"), help="runner secret (env: RUNNER_KEY)")
    parser.add_argument("--api-url", default=os.environ.get("API_URL"), help="control-plane base URL (env: API_URL)")
    parser.add_argument(
        "--interval",
        type=int,
        default=_env_int("POLL_INTERVAL_MS"),
        help="polling interval in ms (env: POLL_INTERVAL_MS, default 30000)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=_env_int("EXECUTION_TIMEOUT_MS"),
        help="per-job execution timeout in ms (env: EXECUTION_TIMEOUT_MS, default 300000)",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL"), help="log level (env: LOG_LEVEL)")
    return parser


async def _run(args: argparse.Namespace) -> None:
    ctx = await bootstrap(
        force=True,
        runner_key=args.runner_key,
        api_url=args.api_url,
        poll_interval_ms=args.interval,
        execution_timeout_ms=args.timeout,
        log_level=args.log_level,
    )
    await serve(ctx)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.runner_key:
        parser.error("--runner-key (or RUNNER_KEY) is required")
    if not args.api_url:
        parser.error("--api-url (or API_URL) is required")
    try:
        asyncio.run(_run(args))
    except StartupError as exc:
        print(f"[jobrunner] startup failed: {exc}", file=sys.stderr, flush=True)
        return 1
    except ValidationError as exc:
        print(f"[jobrunner] invalid configuration: {exc}", file=sys.stderr, flush=True)
        return 2
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
