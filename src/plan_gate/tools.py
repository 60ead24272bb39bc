# tools.py
# Tool registry — all callable implementations.
#
# The executor looks tools up through Toolbox and never calls these
# functions directly. Each tool declares the Action it performs and its
# primary argument, which receives a scalar input (e.g. a fan-out match).
#
# Tools do not retry and do not ask for permission; the executor owns both.

import asyncio
import glob
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from plan_gate.errors import (
    AccessDenied,
    CommandExecutionFailure,
    CommandTimeout,
    ToolNotFoundError,
)
from plan_gate.models import Action, CommandResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0
HTTP_TIMEOUT = 10.0
IGNORED_DIRS = ("node_modules", ".git", "build", ".gradle", "__pycache__")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    action: Action
    primary: str
    func: Callable[["Toolbox", dict], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Glob helpers
# ---------------------------------------------------------------------------


def expand_braces(pattern: str) -> list[str]:
    """Expand the first {a,b} group recursively: 'x.{md,txt}' → ['x.md', 'x.txt']."""
    start = pattern.find("{")
    if start == -1:
        return [pattern]
    depth = 0
    for end in range(start, len(pattern)):
        if pattern[end] == "{":
            depth += 1
        elif pattern[end] == "}":
            depth -= 1
            if depth == 0:
                break
    else:
        return [pattern]

    inner = pattern[start + 1:end]
    if "," not in inner:
        return [pattern]

    options, depth, current = [], 0, ""
    for ch in inner:
        if ch == "," and depth == 0:
            options.append(current)
            current = ""
            continue
        depth += ch == "{"
        depth -= ch == "}"
        current += ch
    options.append(current)

    prefix, suffix = pattern[:start], pattern[end + 1:]
    expanded: list[str] = []
    for option in options:
        expanded.extend(expand_braces(prefix + option + suffix))
    return expanded


def find_matches(pattern: str, root: str | Path | None = None) -> list[str]:
    """Sorted, de-duplicated glob matches with brace expansion and '**' support."""
    root = Path(root) if root is not None else Path.cwd()
    seen: dict[str, None] = {}
    for expanded in expand_braces(pattern):
        base = expanded if os.path.isabs(expanded) else str(root / expanded)
        for match in glob.glob(base, recursive=True):
            try:
                parts = Path(match).relative_to(root).parts
            except ValueError:
                parts = Path(match).parts
            if any(part in IGNORED_DIRS for part in parts):
                continue
            seen.setdefault(match, None)
    return sorted(seen)


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


async def _tool_read_file(box: "Toolbox", args: dict) -> str:
    path = box.resolve_path(args.get("path", ""))
    return path.read_text(encoding="utf-8")


async def _tool_list_directory(box: "Toolbox", args: dict) -> list[str]:
    path = box.resolve_path(args.get("path", "."))
    return sorted(p.name for p in path.iterdir())


async def _tool_find_files(box: "Toolbox", args: dict) -> list[str]:
    pattern = args.get("pattern", "").strip()
    if not pattern:
        raise ValueError("no pattern provided")
    matches = find_matches(pattern, box.root)
    return [str(box.resolve_path(m)) for m in matches]


async def _tool_write_file(box: "Toolbox", args: dict) -> str:
    path = box.resolve_path(args.get("path") or args.get("filePath", ""))
    content = args.get("content", "")
    if not isinstance(content, str):
        content = str(content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return f"Wrote {len(content)} bytes to {path}."


async def _tool_edit_file(box: "Toolbox", args: dict) -> str:
    path = box.resolve_path(args.get("path", ""))
    old_text = args.get("old_text", "")
    new_text = args.get("new_text", "")
    content = path.read_text(encoding="utf-8")
    if not old_text or old_text not in content:
        raise ValueError(f"Text not found in file: {old_text!r}")
    path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
    return f"Edited {path}."


async def _tool_delete_file(box: "Toolbox", args: dict) -> str:
    path = box.resolve_path(args.get("path", ""))
    path.unlink()
    return f"Deleted {path}."


async def _tool_run_command(box: "Toolbox", args: dict) -> CommandResult:
    command = args.get("command", "").strip()
    if not command:
        raise ValueError("no command provided")
    cwd = box.resolve_path(args["cwd"]) if args.get("cwd") else box.root
    timeout = float(args.get("timeout") or box.command_timeout)
    return await run_command(command, cwd=cwd, timeout=timeout)


async def _tool_http_request(box: "Toolbox", args: dict) -> dict:
    url = args.get("url", "").strip()
    if not url:
        raise ValueError("no URL provided")
    method = args.get("method", "GET").upper()
    payload = args.get("payload")
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
        response = await client.request(method, url, json=payload)
    response.raise_for_status()
    return {
        "status": response.status_code,
        "bytes": len(response.content),
        "body": response.text[:4000],
    }


async def run_command(command: str, cwd: str | Path | None = None, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
    """
    Run a shell command with a wall-clock timeout.

    On expiry the process is killed and CommandTimeout is raised. A nonzero
    exit status or a spawn failure raises CommandExecutionFailure.
    """
    started = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandExecutionFailure(command, -1, str(exc)) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandTimeout(command, timeout) from None

    result = CommandResult(
        command=command,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=proc.returncode,
        duration=time.monotonic() - started,
    )
    if result.exit_code != 0:
        raise CommandExecutionFailure(command, result.exit_code, result.stderr)
    logger.debug("Command %r finished in %.2fs", command, result.duration)
    return result


TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("read_file", Action.READ, "path", _tool_read_file),
        ToolSpec("list_directory", Action.READ, "path", _tool_list_directory),
        ToolSpec("find_files", Action.READ, "pattern", _tool_find_files),
        ToolSpec("write_file", Action.WRITE, "path", _tool_write_file),
        ToolSpec("edit_file", Action.MODIFY, "path", _tool_edit_file),
        ToolSpec("delete_file", Action.DELETE, "path", _tool_delete_file),
        ToolSpec("run_command", Action.EXECUTE_COMMAND, "command", _tool_run_command),
        ToolSpec("http_request", Action.NETWORK, "url", _tool_http_request),
    )
}


# ---------------------------------------------------------------------------
# Toolbox
# ---------------------------------------------------------------------------


class Toolbox:
    """Tool registry bound to one workspace root."""

    def __init__(
        self,
        root: str | Path = ".",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        tools: dict[str, ToolSpec] | None = None,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.command_timeout = command_timeout
        self._tools = dict(TOOLS if tools is None else tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(f"Tool '{name}' is not in the registry.") from None

    def resolve_path(self, raw: str | Path) -> Path:
        """Resolve `raw` against the root. Anything outside the root is refused."""
        if not str(raw).strip():
            raise ValueError("no path provided")
        candidate = Path(raw).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise AccessDenied(f"Path {raw!r} resolves outside the workspace {self.root}")
        return resolved

    def normalize_args(self, name: str, value: Any) -> dict:
        """Turn a scalar input into the tool's primary argument."""
        spec = self.get(name)
        if value is None:
            return {}
        if isinstance(value, dict):
            return dict(value)
        return {spec.primary: value}

    def resource_for(self, name: str, args: dict) -> str:
        spec = self.get(name)
        value = args.get(spec.primary)
        if value is None and spec.primary == "path":
            value = args.get("filePath")
        return str(value) if value is not None else name

    async def call(self, name: str, args: dict) -> Any:
        spec = self.get(name)
        return await spec.func(self, args)
