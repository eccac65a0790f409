from __future__ import annotations

import asyncio
import os
import platform
import subprocess
from dataclasses import asdict, dataclass

from loguru import logger

from assistant_runs.cancellation import CancelToken, RunCancelledError

_IS_WINDOWS = platform.system() == "Windows"

TRUNCATION_MARKER = "\n...[truncated]"

RUN_SHELL_TOOL = {
    "name": "run_shell",
    "description": "Run a shell command and return stdout, stderr and the exit code.",
    "input_schema": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute"},
            "cwd": {"type": "string", "description": "Optional working directory"},
        },
        "required": ["command"],
    },
}


@dataclass(frozen=True)
class ShellResult:
    ok: bool
    command: str
    cwd: str
    exit_code: int | None
    timed_out: bool
    stdout: str
    stderr: str

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["tool"] = "run_shell"
        return payload

    def summary(self) -> str:
        return f"exit {self.exit_code if self.exit_code is not None else 'n/a'}{' (timeout)' if self.timed_out else ''}"


def truncate_text(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + TRUNCATION_MARKER


def resolve_cwd(workspace_root: str | None, requested: str | None, default: str | None = None) -> str:
    """Absolute ``requested`` paths pass through; relative ones resolve against the workspace root."""
    base = workspace_root or default or os.getcwd()
    if not requested or not requested.strip():
        return os.path.abspath(base)
    candidate = os.path.expanduser(requested.strip())
    if os.path.isabs(candidate):
        return os.path.abspath(candidate)
    return os.path.abspath(os.path.join(base, candidate))


class ShellToolExecutor:
    """Runs one shell command with a hard timeout and a cap on combined output."""

    def __init__(self, *, timeout_seconds: float = 120.0, output_limit: int = 20_000,
                 kill_grace_seconds: float = 3.0):
        self._timeout = timeout_seconds
        self._output_limit = output_limit
        self._kill_grace = kill_grace_seconds

    @property
    def output_limit(self) -> int:
        return self._output_limit

    async def _spawn(self, command: str, cwd: str) -> asyncio.subprocess.Process:
        if _IS_WINDOWS:
            return await asyncio.create_subprocess_shell(
                f"cmd.exe /c {command}",
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        return await asyncio.create_subprocess_shell(
            command,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> tuple[bytes, bytes]:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            return await asyncio.wait_for(asyncio.shield(communicate), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            communicate.cancel()
            return b"", b""

    def _cap(self, stdout: str, stderr: str) -> tuple[str, str]:
        # stdout is kept first; stderr gets whatever budget remains.
        if len(stdout) + len(stderr) <= self._output_limit:
            return stdout, stderr
        if len(stdout) >= self._output_limit:
            return truncate_text(stdout, self._output_limit), ""
        remaining = self._output_limit - len(stdout)
        return stdout, truncate_text(stderr, remaining)

    async def run(self, command: str, cwd: str, cancel_token: CancelToken) -> ShellResult:
        cancel_token.raise_if_cancelled()
        try:
            proc = await self._spawn(command, cwd)
        except OSError as ex:
            logger.warning(f"run_shell failed to start in {cwd}: {ex}")
            return ShellResult(
                ok=False, command=command, cwd=cwd, exit_code=None, timed_out=False,
                stdout="", stderr=truncate_text(f"Shell command failed: {ex}", self._output_limit),
            )

        logger.debug(f"run_shell started: pid={proc.pid}, cwd={cwd}, command={command[:200]!r}")
        communicate = asyncio.ensure_future(proc.communicate())
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(proc, communicate)
            raise
        finally:
            cancelled.cancel()

        timed_out = False
        if communicate in done:
            stdout_bytes, stderr_bytes = communicate.result()
        else:
            stdout_bytes, stderr_bytes = await self._terminate(proc, communicate)
            if cancel_token.cancelled:
                logger.info(f"run_shell cancelled: pid={proc.pid}")
                raise RunCancelledError(cancel_token.reason or "Request cancelled by user.")
            timed_out = True
            logger.warning(f"run_shell timed out after {self._timeout:.0f}s: {command[:200]!r}")

        stdout, stderr = self._cap(
            stdout_bytes.decode(errors="replace"),
            stderr_bytes.decode(errors="replace"),
        )
        exit_code = proc.returncode
        return ShellResult(
            ok=not timed_out and exit_code == 0,
            command=command,
            cwd=cwd,
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout,
            stderr=stderr,
        )
