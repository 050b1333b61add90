"""Code sandbox capability.

The executor only talks to ``CodeSandbox``: spawn a process for a prepared
workspace and terminate it. ``SubprocessSandbox`` runs the workspace entry
program with an isolated Python interpreter:

- ``-I`` isolated mode: no user site, no ``PYTHON*`` variables honoured
- an explicit child environment; nothing is inherited from the runner
- writes restricted to the result file by the entry program's audit hook
- network access is left untouched
"""
from __future__ import annotations

import asyncio
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Protocol

import structlog

from .errors import SpawnError

logger = structlog.get_logger().bind(component="sandbox")


class SandboxProcess(Protocol):
    pid: int
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]
    returncode: Optional[int]

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


@dataclass(slots=True)
class SandboxRequest:
    workspace: Path
    entry: Path
    result_path: Path
    env: Mapping[str, str] = field(default_factory=dict)


class CodeSandbox(ABC):
    @abstractmethod
    async def spawn(self, request: SandboxRequest) -> SandboxProcess:
        """Start the entry program; stdout and stderr must be piped."""

    def terminate(self, process: SandboxProcess) -> None:
        """Force-kill ``process``; a process that already exited is ignored."""
        try:
            process.kill()
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning("sandbox_kill_failed", pid=process.pid, error=str(exc))


class SubprocessSandbox(CodeSandbox):
    def __init__(self, python: Optional[str] = None) -> None:
        self.python = python or sys.executable

    def command(self, request: SandboxRequest) -> list[str]:
        return [self.python, "-I", "-B", "-u", "-X", "utf8", str(request.entry)]

    def environment(self, request: SandboxRequest) -> dict[str, str]:
        env: dict[str, str] = {}
        if sys.platform == "win32" and "SYSTEMROOT" in os.environ:
            # sockets do not initialise on Windows without it
            env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
        env.update(request.env)
        return env

    async def spawn(self, request: SandboxRequest) -> SandboxProcess:
        cmd = self.command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.workspace),
                env=self.environment(request),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"failed to start sandbox process: {exc}") from exc
        logger.debug("sandbox_process_started", pid=process.pid, python=self.python)
        return process
