"""Text-line tool protocol for backends without native tool calling.

The model must answer with exactly one token line per turn::

    PLAN {"steps": ["...", "..."]}
    TOOL_CALL {"name": "run_shell", "arguments": {"command": "...", "cwd": "..."}}
    STEP_DONE {"index": 0, "note": "..."}
    FINAL {"message": "..."}

A PLAN opens the run and becomes a checklist. FINAL is only accepted once
every checklist item has been marked done. Anything else is rejected and
the model is re-prompted; every execution turn counts against a fixed
iteration budget.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from loguru import logger

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent
from assistant_runs.providers.base import CompleteSync, CompletionOptions, CompletionResult, ProviderError
from assistant_runs.tools.run_shell_tool import RunShellTool
from assistant_runs.tools.shell_tool import truncate_text

PLAN_PREFIX = "PLAN"
TOOL_CALL_PREFIX = "TOOL_CALL"
STEP_DONE_PREFIX = "STEP_DONE"
FINAL_PREFIX = "FINAL"

FALLBACK_PLAN_STEP = "Complete the user request end-to-end."

_TRACE_LIMIT = 1200
_TURN_TRACE_LIMIT = 400

_decoder = json.JSONDecoder()


class ProtocolError(ProviderError):
    pass


class StepBudgetExceededError(ProviderError):
    pass


@dataclass(frozen=True)
class ToolCallRequest:
    command: str
    cwd: str | None = None


@dataclass(frozen=True)
class StepDone:
    index: int
    note: str | None = None


@dataclass
class Checklist:
    steps: list[str]
    completed: list[bool] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.completed:
            self.completed = [False] * len(self.steps)

    def mark(self, index: int) -> bool:
        if not 0 <= index < len(self.steps):
            return False
        self.completed[index] = True
        return True

    @property
    def all_done(self) -> bool:
        return all(self.completed)

    def next_incomplete(self) -> int | None:
        for index, done in enumerate(self.completed):
            if not done:
                return index
        return None

    def render(self) -> str:
        return "\n".join(
            f"{'[x]' if done else '[ ]'} {index}. {step}"
            for index, (step, done) in enumerate(zip(self.steps, self.completed))
        )


def parse_prefixed_json(text: str, prefix: str) -> object | None:
    """JSON value following ``prefix`` at the start of a line, or None."""
    match = re.search(rf"^\s*{prefix}\b", text, re.MULTILINE)
    if match is None:
        return None
    payload_text = text[match.end():].lstrip()
    if not payload_text:
        return None
    try:
        value, _ = _decoder.raw_decode(payload_text)
    except json.JSONDecodeError:
        return None
    return value


def sanitize_plan_steps(steps: list[str], max_steps: int) -> list[str]:
    cleaned = list(dict.fromkeys(step.strip() for step in steps if step.strip()))
    if not cleaned:
        return [FALLBACK_PLAN_STEP]
    return cleaned[:max_steps]


def parse_plan(text: str, max_steps: int = 12) -> list[str] | None:
    payload = parse_prefixed_json(text, PLAN_PREFIX)
    if not isinstance(payload, dict) or not isinstance(payload.get("steps"), list):
        return None
    return sanitize_plan_steps([s for s in payload["steps"] if isinstance(s, str)], max_steps)


def parse_tool_call(text: str) -> ToolCallRequest | None:
    payload = parse_prefixed_json(text, TOOL_CALL_PREFIX)
    if not isinstance(payload, dict) or payload.get("name") != "run_shell":
        return None
    arguments = payload.get("arguments")
    if not isinstance(arguments, dict):
        return None
    command = arguments.get("command")
    if not isinstance(command, str) or not command.strip():
        return None
    cwd = arguments.get("cwd")
    return ToolCallRequest(
        command=command.strip(),
        cwd=cwd.strip() if isinstance(cwd, str) and cwd.strip() else None,
    )


def parse_step_done(text: str) -> StepDone | None:
    payload = parse_prefixed_json(text, STEP_DONE_PREFIX)
    if not isinstance(payload, dict):
        return None
    index = payload.get("index")
    if isinstance(index, bool):
        return None
    if isinstance(index, float) and index.is_integer():
        index = int(index)
    if not isinstance(index, int) or index < 0:
        return None
    note = payload.get("note")
    return StepDone(index=index, note=note.strip() if isinstance(note, str) and note.strip() else None)


def parse_final(text: str) -> str | None:
    payload = parse_prefixed_json(text, FINAL_PREFIX)
    if not isinstance(payload, dict):
        return None
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        return None
    return message.strip()


def build_system_prompt(
    *,
    access_mode: str,
    workspace_path: str | None,
    trust_level: str | None,
) -> str:
    context = f"Preferred working directory: {workspace_path}" if workspace_path else "No workspace directory is selected."
    trust = f"Workspace trust: {trust_level}." if trust_level else "Workspace trust: none."
    return "\n".join([
        "You are a local coding assistant with autonomous CLI tool access.",
        "",
        "You MUST follow this protocol:",
        f'1) First response: {PLAN_PREFIX} {{"steps":["step 1","step 2",...]}}',
        f"2) During execution: respond with either {TOOL_CALL_PREFIX} {{...}} or "
        f'{STEP_DONE_PREFIX} {{"index":<0-based checklist index>,"note":"optional"}}',
        f'3) Only when every step is completed: {FINAL_PREFIX} {{"message":"final user response"}}',
        "",
        "Never claim a step is complete unless you verified the output using command results.",
        "When you need to execute a shell command, respond with exactly one line:",
        f'{TOOL_CALL_PREFIX} {{"name":"run_shell","arguments":{{"command":"<shell command>","cwd":"<optional cwd>"}}}}',
        "No markdown, no extra text when calling a tool.",
        "",
        "Available tools:",
        "- run_shell(command: string, cwd?: string): run a shell command and return stdout/stderr/exit code.",
        "",
        "Use tools whenever they help fulfill the request. You may call tools repeatedly until done.",
        "Before finalizing, verify key outputs exist by running shell checks (for example ls/find/test commands).",
        f"Only return {FINAL_PREFIX} after all planned steps are complete.",
        f"Access mode: {access_mode}.",
        trust,
        context,
        "After tool results are returned, either call another tool, mark a step complete, or finalize if everything is done.",
    ])


class LocalToolLoop:
    def __init__(
        self,
        complete_sync: CompleteSync,
        tool: RunShellTool,
        *,
        max_steps: int = 24,
        plan_attempts: int = 2,
        max_plan_steps: int = 12,
    ):
        self._complete_sync = complete_sync
        self._tool = tool
        self._max_steps = max_steps
        self._plan_attempts = plan_attempts
        self._max_plan_steps = max_plan_steps
        self._input_tokens = 0
        self._output_tokens = 0

    async def _turn(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> str:
        def forward_status(event: ProviderEvent) -> None:
            # Raw protocol lines never reach the user as text.
            if event.type == "status":
                on_event(event)

        result = await self._complete_sync(history, options, cancel_token, forward_status)
        self._input_tokens += result.input_tokens or 0
        self._output_tokens += result.output_tokens or 0
        return result.text

    async def _plan(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> Checklist:
        for attempt in range(self._plan_attempts):
            cancel_token.raise_if_cancelled()
            on_event(ProviderEvent.status("Planning checklist..."))
            on_event(ProviderEvent.delta("Creating execution plan...\n" if attempt == 0 else "Retrying plan format...\n"))

            text = await self._turn(history, options, cancel_token, on_event)
            history.append({"role": "assistant", "content": text})
            steps = parse_plan(text, self._max_plan_steps)
            if steps is None:
                logger.debug(f"Rejected plan turn (attempt {attempt + 1}/{self._plan_attempts})")
                history.append({
                    "role": "system",
                    "content": f'Invalid protocol. Respond with {PLAN_PREFIX} {{"steps":[...]}}.',
                })
                continue

            checklist = Checklist(steps)
            history.append({"role": "system", "content": f"CHECKLIST\n{checklist.render()}"})
            on_event(ProviderEvent.traced("plan", checklist.render()))
            on_event(ProviderEvent.delta(f"Plan ({len(steps)} steps):\n{checklist.render()}\n"))
            return checklist

        raise ProtocolError("Local agent failed to produce a valid execution plan.")

    async def run(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> CompletionResult:
        context = self._tool.context
        workspace = context.workspace
        agent_history: list[dict] = [
            {
                "role": "system",
                "content": build_system_prompt(
                    access_mode=context.access_mode,
                    workspace_path=workspace.root_path if workspace else None,
                    trust_level=workspace.trust_level if workspace else None,
                ),
            },
            *history,
        ]
        turn_options = CompletionOptions(
            model=options.model,
            temperature=options.temperature,
            max_output_tokens=options.max_output_tokens,
            stream=False,
            cwd=options.cwd,
            full_access=options.full_access,
        )
        self._input_tokens = 0
        self._output_tokens = 0

        checklist = await self._plan(agent_history, turn_options, cancel_token, on_event)
        final_message = await self._execute(agent_history, checklist, turn_options, cancel_token, on_event)

        return CompletionResult(
            text=final_message,
            model=options.model,
            input_tokens=self._input_tokens or None,
            output_tokens=self._output_tokens or None,
        )

    async def _execute(
        self,
        history: list[dict],
        checklist: Checklist,
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> str:
        total = len(checklist.steps)
        for iteration in range(1, self._max_steps + 1):
            cancel_token.raise_if_cancelled()
            active = checklist.next_incomplete()
            on_event(ProviderEvent.status("Finalizing..." if active is None else f"Executing step {active + 1} of {total}..."))
            on_event(ProviderEvent.delta(
                f"\nIteration {iteration}: {'finalization' if active is None else f'step {active}'}\n"
            ))
            history.append({
                "role": "system",
                "content": f"CHECKLIST\n{checklist.render()}\nCurrent step: {'none' if active is None else active}",
            })

            text = await self._turn(history, options, cancel_token, on_event)
            history.append({"role": "assistant", "content": text})
            on_event(ProviderEvent.traced(
                "action", f"Model turn {iteration}: {truncate_text(text, _TURN_TRACE_LIMIT)}", "generic"
            ))

            step_done = parse_step_done(text)
            if step_done is not None:
                if not checklist.mark(step_done.index):
                    history.append({
                        "role": "system",
                        "content": f"Invalid {STEP_DONE_PREFIX} index {step_done.index}. Use 0..{total - 1}.",
                    })
                    continue
                rendered = checklist.render()
                on_event(ProviderEvent.traced("plan", rendered))
                on_event(ProviderEvent.delta(
                    f"Checked off step {step_done.index}: {checklist.steps[step_done.index]}\n"
                ))
                history.append({"role": "system", "content": f"CHECKLIST_UPDATED\n{rendered}"})
                continue

            final_message = parse_final(text)
            if final_message is not None:
                if not checklist.all_done:
                    history.append({
                        "role": "system",
                        "content": f"Cannot finalize yet. Remaining checklist:\n{checklist.render()}",
                    })
                    continue
                on_event(ProviderEvent.traced("plan", f"All {total} steps complete."))
                on_event(ProviderEvent.delta(f"{final_message}\n"))
                logger.info(f"Local agent finished after {iteration} iteration(s)")
                return final_message

            tool_call = parse_tool_call(text)
            if tool_call is not None:
                payload = await self._run_tool(tool_call, active, cancel_token, on_event)
                history.append({"role": "system", "content": f"TOOL_RESULT {json.dumps(payload)}"})
                continue

            history.append({
                "role": "system",
                "content": (
                    f"Invalid protocol response. Use {TOOL_CALL_PREFIX}, {STEP_DONE_PREFIX}, or {FINAL_PREFIX}."
                ),
            })

        logger.warning(f"Local agent exceeded its step budget ({self._max_steps} iterations)")
        raise StepBudgetExceededError(
            f"Local agent exceeded its step budget ({self._max_steps} iterations) without finishing."
        )

    async def _run_tool(
        self,
        tool_call: ToolCallRequest,
        active: int | None,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> dict:
        cwd = self._tool.resolve_cwd(tool_call.cwd)
        step_label = "final" if active is None else str(active)
        on_event(ProviderEvent.traced(
            "action", f"Step {step_label} command:\n{tool_call.command}\ncwd: {cwd}", "command"
        ))
        on_event(ProviderEvent.status("Running command..."))
        on_event(ProviderEvent.delta(f"$ {tool_call.command}\n"))

        result, refusal = await self._tool.execute_or_refuse(
            {"command": tool_call.command, "cwd": tool_call.cwd}, cancel_token
        )
        if result is None:
            on_event(ProviderEvent.traced("action", f"refused: {refusal}", "command-result"))
            on_event(ProviderEvent.delta(f"refused: {refusal}\n"))
            return {"ok": False, "tool": "run_shell", "command": tool_call.command, "cwd": cwd, "error": refusal}

        exit_text = "n/a" if result.exit_code is None else str(result.exit_code)
        trace_lines = [f"exit: {exit_text}{' (timeout)' if result.timed_out else ''}"]
        if result.stdout:
            trace_lines.append(f"stdout:\n{truncate_text(result.stdout, _TRACE_LIMIT)}")
        if result.stderr:
            trace_lines.append(f"stderr:\n{truncate_text(result.stderr, _TRACE_LIMIT)}")
        on_event(ProviderEvent.traced("action", "\n\n".join(trace_lines), "command-result"))
        on_event(ProviderEvent.delta(f"{result.summary()}\n"))
        return result.to_payload()
