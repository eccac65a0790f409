from __future__ import annotations

import json

from loguru import logger

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent
from assistant_runs.local_protocol import StepBudgetExceededError
from assistant_runs.providers.base import (
    CompleteToolTurn,
    CompletionOptions,
    CompletionResult,
    ProviderError,
    ToolCall,
)
from assistant_runs.providers.common import to_chat_messages
from assistant_runs.tools.run_shell_tool import RunShellTool
from assistant_runs.tools.shell_tool import RUN_SHELL_TOOL, truncate_text


class NativeToolLoop:
    """Turn loop for backends that return structured tool calls."""

    def __init__(self, complete_tool_turn: CompleteToolTurn, tool: RunShellTool, *, max_steps: int = 24):
        self._complete_tool_turn = complete_tool_turn
        self._tool = tool
        self._max_steps = max_steps

    async def run(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> CompletionResult:
        context = self._tool.context
        workspace = context.workspace
        system_parts = [m["content"] for m in history if m.get("role") == "system"]
        system_parts.append(_tool_system_prompt(
            context.access_mode,
            workspace.root_path if workspace else None,
            workspace.trust_level if workspace else None,
        ))
        system_prompt = "\n\n".join(system_parts)
        messages = _merge_roles([m for m in to_chat_messages(history) if m["role"] != "system"])

        input_tokens = 0
        output_tokens = 0
        texts: list[str] = []

        for step in range(1, self._max_steps + 1):
            cancel_token.raise_if_cancelled()
            on_event(ProviderEvent.status("Thinking..." if step == 1 else f"Continuing (turn {step})..."))
            turn = await self._complete_tool_turn(system_prompt, messages, [RUN_SHELL_TOOL], options, cancel_token)
            input_tokens += turn.input_tokens or 0
            output_tokens += turn.output_tokens or 0
            messages.append(turn.assistant_turn)

            if turn.text:
                texts.append(turn.text)
                on_event(ProviderEvent.delta(turn.text))

            if not turn.tool_calls:
                text = turn.text.strip() or "\n\n".join(texts).strip()
                if not text:
                    raise ProviderError("Model returned an empty response.")
                logger.info(f"Tool loop finished after {step} turn(s)")
                return CompletionResult(
                    text=text,
                    model=options.model,
                    input_tokens=input_tokens or None,
                    output_tokens=output_tokens or None,
                )

            results = []
            for call in turn.tool_calls:
                results.append(await self._execute(call, cancel_token, on_event))
            messages.append({"role": "user", "content": results})

        raise StepBudgetExceededError(
            f"Tool loop exceeded its step budget ({self._max_steps} turns) without finishing."
        )

    async def _execute(self, call: ToolCall, cancel_token: CancelToken, on_event: OnEvent) -> dict:
        if call.name != RUN_SHELL_TOOL["name"]:
            return {
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": f'Error: unknown tool "{call.name}"',
                "is_error": True,
            }

        command = str(call.arguments.get("command") or "")
        on_event(ProviderEvent.traced("action", f"$ {command}", "command"))
        on_event(ProviderEvent.status("Running command..."))
        result, refusal = await self._tool.execute_or_refuse(call.arguments, cancel_token)
        if result is None:
            on_event(ProviderEvent.traced("action", f"refused: {refusal}", "command-result"))
            return {"type": "tool_result", "tool_use_id": call.id, "content": refusal, "is_error": True}

        on_event(ProviderEvent.traced(
            "action",
            f"{result.summary()}\n{truncate_text(result.stdout + result.stderr, 1200)}".rstrip(),
            "command-result",
        ))
        return {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": json.dumps(result.to_payload()),
            "is_error": not result.ok,
        }


def _tool_system_prompt(access_mode: str, workspace_path: str | None, trust_level: str | None) -> str:
    return "\n".join([
        "You are a coding assistant with shell access through the run_shell tool.",
        "Verify results with commands before claiming work is done.",
        f"Access mode: {access_mode}.",
        f"Workspace trust: {trust_level}." if trust_level else "Workspace trust: none.",
        f"Preferred working directory: {workspace_path}" if workspace_path else "No workspace directory is selected.",
    ])


def _merge_roles(messages: list[dict]) -> list[dict]:
    merged: list[dict] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1] = {"role": message["role"], "content": f"{merged[-1]['content']}\n\n{message['content']}"}
        else:
            merged.append(dict(message))
    return merged
