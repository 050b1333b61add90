"""Entry program executed inside a job sandbox.

This file is copied verbatim into every workspace as ``entry.py`` and run by
an isolated interpreter. It never sees generated code: the job context
arrives as ``context.json`` and is turned into typed objects here, then the
job's ``main.py`` is imported and ``main(context)`` is called. The returned
value is JSON-encoded into the result file named by the context.

Only the standard library may be imported from this module.
"""
from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

CONTEXT_FILE = "context.json"
MAIN_FILE = "main.py"

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC
_WRITE_MODE_CHARS = frozenset("wax+")
_BLOCKED_EVENTS = frozenset({
    "os.system",
    "os.exec",
    "os.fork",
    "os.forkpty",
    "os.posix_spawn",
    "os.spawn",
    "subprocess.Popen",
    "os.chmod",
    "os.chown",
    "os.link",
    "os.mkdir",
    "os.remove",
    "os.rename",
    "os.rmdir",
    "os.symlink",
    "os.truncate",
    "os.utime",
    "shutil.copyfile",
    "shutil.move",
    "shutil.rmtree",
})


# ------------------------------------------------------------
# Context objects handed to main()
# ------------------------------------------------------------
@dataclass
class HttpRequest:
    search_params: list[tuple[str, str]] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    json_body: Any = None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for name, value in self.search_params:
            if name == key:
                return value
        return default

    def get_all(self, key: str) -> list[str]:
        return [value for name, value in self.search_params if name == key]

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass
class Trigger:
    name: str
    request: Optional[HttpRequest] = None
    form_values: Optional[dict[str, Any]] = None


@dataclass
class Context:
    env: dict[str, str] = field(default_factory=dict)
    trigger: Optional[Trigger] = None


def _form_value(field_type: str, value: Any) -> Any:
    """Date fields become ``date``, DateTime fields ``datetime`` (UTC when epoch ms)."""
    if field_type not in ("Date", "DateTime") or value is None:
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if field_type == "Date":
        return moment.date()
    return moment


def build_context(payload: dict[str, Any]) -> Context:
    trigger_data = payload.get("trigger")
    trigger = None
    if trigger_data is not None:
        request = None
        request_data = trigger_data.get("request")
        if request_data is not None:
            request = HttpRequest(
                search_params=[(str(k), str(v)) for k, v in request_data.get("searchParams", [])],
                headers={str(k).lower(): str(v) for k, v in (request_data.get("headers") or {}).items()},
                json_body=request_data.get("jsonBody"),
            )
        form_values = None
        if trigger_data.get("formValues") is not None:
            form_values = {
                item["code"]: _form_value(item.get("fieldType", ""), item.get("value"))
                for item in trigger_data["formValues"]
            }
        trigger = Trigger(name=trigger_data["name"], request=request, form_values=form_values)
    return Context(env=dict(payload.get("env") or {}), trigger=trigger)


# ------------------------------------------------------------
# Write guard
# ------------------------------------------------------------
def _is_write(mode: Any, flags: Any) -> bool:
    if isinstance(flags, int) and flags & _WRITE_FLAGS:
        return True
    return isinstance(mode, str) and bool(_WRITE_MODE_CHARS.intersection(mode))


def install_write_guard(allowed: Path) -> None:
    """Refuse filesystem writes other than to ``allowed`` and refuse process spawning."""
    allowed_path = os.path.realpath(allowed)

    def hook(event: str, args: tuple) -> None:
        if event == "open":
            path, mode, flags = (tuple(args) + (None, None, None))[:3]
            if isinstance(path, int) or not _is_write(mode, flags):
                return
            if os.path.realpath(os.fsdecode(path)) != allowed_path:
                raise PermissionError(f"write access denied: {os.fsdecode(path)}")
        elif event in _BLOCKED_EVENTS:
            raise PermissionError(f"operation not permitted in sandbox: {event}")

    sys.addaudithook(hook)


# ------------------------------------------------------------
# Execution
# ------------------------------------------------------------
def load_main(path: Path) -> Callable[..., Any]:
    spec = importlib.util.spec_from_file_location("main", path)
    if spec is None or spec.loader is None:
        raise SystemExit(f"cannot load {path.name}")
    module = importlib.util.module_from_spec(spec)
    sys.modules["main"] = module
    spec.loader.exec_module(module)
    entry = getattr(module, "main", None)
    if not callable(entry):
        raise SystemExit(f"{path.name} does not define a callable main(context)")
    return entry


async def _resolve(awaitable: Any) -> Any:
    return await awaitable


def run(workspace: Path) -> int:
    payload = json.loads((workspace / CONTEXT_FILE).read_text(encoding="utf-8"))
    result_path = workspace / payload["resultFile"]
    context = build_context(payload)
    install_write_guard(result_path)

    main = load_main(workspace / MAIN_FILE)
    value = main(context)
    if inspect.isawaitable(value):
        value = asyncio.run(_resolve(value))

    encoded = json.dumps(value)
    with open(result_path, "w", encoding="utf-8") as fh:
        fh.write(encoded)
    return 0


if __name__ == "__main__":
    sys.exit(run(Path(__file__).resolve().parent))
