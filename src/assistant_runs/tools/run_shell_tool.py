from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from assistant_runs.cancellation import CancelToken
from assistant_runs.storage.models import WorkspaceRecord
from assistant_runs.tools.command_policy import AccessMode, CommandPolicyError, enforce_command_policy
from assistant_runs.tools.shell_tool import ShellResult, ShellToolExecutor, resolve_cwd


@dataclass(frozen=True)
class ToolContext:
    workspace: WorkspaceRecord | None = None
    access_mode: AccessMode = "scoped"
    default_cwd: str | None = None

    @property
    def workspace_root(self) -> str | None:
        return self.workspace.root_path if self.workspace is not None else None


class RunShellTool:
    """The ``run_shell`` tool: cwd resolution, policy check, then execution."""

    name = "run_shell"

    def __init__(self, executor: ShellToolExecutor, context: ToolContext):
        self._executor = executor
        self._context = context

    @property
    def context(self) -> ToolContext:
        return self._context

    def resolve_cwd(self, requested: str | None) -> str:
        return resolve_cwd(self._context.workspace_root, requested, self._context.default_cwd)

    async def execute(self, command: str, requested_cwd: str | None, cancel_token: CancelToken) -> ShellResult:
        """Raises CommandPolicyError when the command is refused before it runs."""
        cwd = self.resolve_cwd(requested_cwd)
        enforce_command_policy(command, cwd, self._context.access_mode, self._context.workspace)
        result = await self._executor.run(command, cwd, cancel_token)
        logger.debug(f"run_shell finished: {result.summary()}, cwd={cwd}")
        return result

    async def execute_or_refuse(self, arguments: dict, cancel_token: CancelToken) -> tuple[ShellResult | None, str]:
        """Run from a tool-call argument dict; a refused command comes back as its reason."""
        command = str(arguments.get("command") or "").strip()
        cwd = arguments.get("cwd") if isinstance(arguments.get("cwd"), str) else None
        try:
            result = await self.execute(command, cwd, cancel_token)
        except CommandPolicyError as ex:
            logger.info(f"run_shell refused: {ex}")
            return None, str(ex)
        return result, ""
